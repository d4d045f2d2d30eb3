"""图像生成平台后端"""
