"""Provider 凭证加密工具

用法:
    python scripts/encrypt_provider_key.py --generate-key
    python scripts/encrypt_provider_key.py sk-xxxx
    python scripts/encrypt_provider_key.py sk-xxxx --provider openai

不带 --provider 时只打印密文；带上时直接写入 providers.api_key_encrypted。
"""
import argparse
import asyncio
import os
import sys

from sqlalchemy import select

# Add the parent directory to sys.path to import imagegen modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imagegen.core.database import async_session_maker
from imagegen.core.security import ProviderKeyCipher, mask_api_key
from imagegen.core.timeutil import utcnow
from imagegen.models import Provider


async def store_provider_key(provider_name: str, encrypted: str) -> bool:
    async with async_session_maker() as session:
        result = await session.execute(select(Provider).where(Provider.name == provider_name))
        provider = result.scalar_one_or_none()
        if provider is None:
            return False

        provider.api_key_encrypted = encrypted
        provider.key_encrypted_at = utcnow()
        await session.commit()
        return True


def main():
    parser = argparse.ArgumentParser(description="Encrypt a provider API key with ENCRYPTION_KEY")
    parser.add_argument("api_key", nargs="?", help="plaintext provider API key")
    parser.add_argument("--provider", help="provider name to update")
    parser.add_argument("--generate-key", action="store_true", help="print a new base64 AES-256 key and exit")
    args = parser.parse_args()

    if args.generate_key:
        print(ProviderKeyCipher.generate_key())
        return

    if not args.api_key:
        parser.error("api_key is required")

    encrypted = ProviderKeyCipher().encrypt(args.api_key)

    if not args.provider:
        print(encrypted)
        return

    if not asyncio.run(store_provider_key(args.provider, encrypted)):
        print(f"Provider not found: {args.provider}")
        sys.exit(1)

    print(f"Stored key {mask_api_key(args.api_key)} for provider {args.provider}")


if __name__ == "__main__":
    main()
