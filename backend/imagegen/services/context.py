"""管线上下文数据结构"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from imagegen.models.catalog import AIModel, Provider


@dataclass
class Principal:
    """一次请求解析出的调用方身份，不落库"""
    user_id: UUID
    api_key_id: Optional[UUID] = None
    custom_rpm: Optional[int] = None
    custom_rpd: Optional[int] = None


@dataclass
class ClientInfo:
    """请求来源"""
    ip_address: str = "unknown"
    user_agent: Optional[str] = None


@dataclass
class GenerationParams:
    """生成参数"""
    prompt: str
    negative_prompt: Optional[str] = None
    model_id: Optional[UUID] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    cfg_scale: Optional[float] = None
    seed: Optional[int] = None
    num_images: Optional[int] = None


@dataclass
class ResolvedModel:
    """模型解析结果；model 为 None 表示使用隐式默认模型

    model_id / provider_id 在解析时取出，会话回滚后 ORM 对象过期也仍可使用。
    """
    model: Optional[AIModel]
    provider: Optional[Provider]
    credits_cost: float
    model_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    requested_model_id: Optional[UUID] = None

    @property
    def substituted(self) -> bool:
        return self.requested_model_id is not None and self.requested_model_id != self.model_id


@dataclass
class GenerationOutcome:
    """上游成功结果"""
    image_urls: List[str]
    elapsed_ms: int
    provider_status: int = 200

    @property
    def image_url(self) -> str:
        return self.image_urls[0]


@dataclass
class CreditBalances:
    """扣费后的余额"""
    balance: float
    daily_credits: float


@dataclass
class GenerationResult:
    """管线成功返回给调用方的内容"""
    image_id: UUID
    image_url: str
    prompt: str
    width: int
    height: int
    generation_time_ms: int
    credits_used: float
    balances: CreditBalances
    created_at: Optional[datetime] = None
