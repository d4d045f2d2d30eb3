"""上游生成调用

管线中唯一访问网络的阶段。所有结果都如实上报，不在请求内自动重试。
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from imagegen.core.config import get_settings
from imagegen.core.errors import GenError, GenErrorKind, classify_provider_status
from imagegen.core.security import ProviderKeyCipher
from imagegen.services.context import GenerationOutcome, GenerationParams, ResolvedModel

logger = logging.getLogger(__name__)


def build_prompt(prompt: str, negative_prompt: Optional[str]) -> str:
    text = f"Generate an image: {prompt}"
    if negative_prompt:
        text += f". Avoid: {negative_prompt}"
    return text


def extract_image_urls(data: Any) -> List[str]:
    """
    从上游响应中取出图片引用

    支持两种格式：
    - chat completions: choices[0].message.images[*].image_url.url
    - images API: data[*].url / data[*].b64_json
    """
    if not isinstance(data, dict):
        return []

    urls: List[str] = []

    choices = data.get("choices") or []
    if choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        for image in message.get("images") or []:
            url = ((image or {}).get("image_url") or {}).get("url")
            if url:
                urls.append(url)

    for item in data.get("data") or []:
        if not isinstance(item, dict):
            continue
        if item.get("url"):
            urls.append(item["url"])
        elif item.get("b64_json"):
            urls.append(f"data:image/png;base64,{item['b64_json']}")

    return urls


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(1, int(float(value)))
    except ValueError:
        return None


class GenerationInvoker:
    """上游生成调用器"""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            transport: 自定义 httpx transport（测试时注入 MockTransport）
            timeout: 超时秒数，默认读取配置
        """
        self.settings = get_settings()
        self.transport = transport
        self.timeout = timeout if timeout is not None else self.settings.provider_timeout_seconds

    def resolve_target(self, resolved: ResolvedModel) -> Tuple[str, str, Optional[str]]:
        """
        确定调用目标

        Returns:
            (endpoint, 上游模型名, 明文凭证)
        """
        model = resolved.model
        provider = resolved.provider

        endpoint = self.settings.ai_gateway_url
        upstream_model = self.settings.ai_gateway_model
        credential = self.settings.ai_gateway_api_key

        if model is not None:
            if model.api_endpoint:
                endpoint = model.api_endpoint
                upstream_model = model.model_id
            encrypted = model.api_key_encrypted or (provider.api_key_encrypted if provider else None)
            if encrypted:
                try:
                    credential = ProviderKeyCipher().decrypt(encrypted)
                except Exception as e:
                    logger.error(f"Failed to decrypt provider credential for model {model.id}: {e}")
                    raise GenError(GenErrorKind.PROVIDER_AUTH, "Provider credential could not be decrypted")

        return endpoint, upstream_model, credential

    def build_payload(self, upstream_model: str, params: GenerationParams) -> Dict[str, Any]:
        return {
            "model": upstream_model,
            "messages": [
                {"role": "user", "content": build_prompt(params.prompt, params.negative_prompt)},
            ],
            "modalities": ["image", "text"],
        }

    async def generate(self, params: GenerationParams, resolved: ResolvedModel) -> GenerationOutcome:
        """
        调用上游生成图片

        Raises:
            GenError: 网络失败、上游非 2xx、或成功响应中没有图片
        """
        endpoint, upstream_model, credential = self.resolve_target(resolved)
        if not credential:
            logger.error("Image generation credential not configured")
            raise GenError(GenErrorKind.PROVIDER_AUTH, "Image generation service not configured")

        headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(upstream_model, params)

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                # 整个调用共用一个时限，而不是 httpx 的分阶段超时
                response = await asyncio.wait_for(
                    client.post(endpoint, headers=headers, json=payload), timeout=self.timeout
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"Provider call timed out after {self.timeout}s: {e}")
            raise GenError(GenErrorKind.UNREACHABLE, f"Provider timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            logger.error(f"Provider unreachable: {e}")
            raise GenError(GenErrorKind.UNREACHABLE, f"Provider unreachable: {e}")
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if not response.is_success:
            body = response.text
            kind = classify_provider_status(response.status_code, body)
            logger.error(f"Provider error {response.status_code} ({kind.value}) after {elapsed_ms}ms: {body[:200]}")
            retry_after = None
            if kind == GenErrorKind.PROVIDER_RATE_LIMITED:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
            raise GenError(kind, body or kind.value, provider_status=response.status_code, retry_after=retry_after)

        try:
            data = response.json()
        except ValueError:
            data = None

        urls = extract_image_urls(data)
        if not urls:
            logger.error(f"No image in provider response: {str(data)[:200]}")
            raise GenError(
                GenErrorKind.EMPTY_RESULT,
                "No image in provider response",
                provider_status=response.status_code,
            )

        return GenerationOutcome(
            image_urls=urls,
            elapsed_ms=elapsed_ms,
            provider_status=response.status_code,
        )
