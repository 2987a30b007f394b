import os
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

ESIGN_URL = os.getenv("ESIGN_URL", "")
ESIGN_DELAY = float(os.getenv("ESIGN_DELAY", "1.5"))


@dataclass(frozen=True)
class SignResult:
    success: bool
    reference: Optional[str] = None
    message: str = ""


class SimulatedEsignProvider:
    """Імітація провайдера eSign: затримка, потім успіх."""

    def __init__(self, delay: float = ESIGN_DELAY, succeed: bool = True):
        self.delay = delay
        self.succeed = succeed

    async def sign_document(self) -> SignResult:
        await asyncio.sleep(self.delay)
        if self.succeed:
            return SignResult(success=True, reference="SIMULATED")
        return SignResult(success=False, message="eSign was not completed.")


class HttpEsignProvider:
    """Провайдер eSign через HTTP: POST на ESIGN_URL, очікується {"status": "success"}."""

    def __init__(self, url: str, timeout: float = 60.0):
        self.url = url
        self.timeout = timeout

    async def sign_document(self) -> SignResult:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(self.url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                    data = await response.json(content_type=None) if response.status == 200 else {}
                    if isinstance(data, dict) and data.get("status") == "success":
                        return SignResult(success=True, reference=data.get("reference"))
                    logger.warning(f"eSign provider returned HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Помилка провайдера eSign: {e}")
        return SignResult(success=False, message="eSign failed. Please try again.")


def get_provider():
    if ESIGN_URL:
        return HttpEsignProvider(ESIGN_URL)
    return SimulatedEsignProvider()
