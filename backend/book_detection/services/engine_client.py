"""Client for the external book detection engine"""

import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from book_detection.config import settings
from book_detection.schemas.detection_job import EngineOutcome

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Optional[int]], Awaitable[None]]


class DetectionEngineClient:
    """
    Streams an image to the detection engine and relays its progress.

    The engine answers ``POST {endpoint}/detect`` with newline-delimited
    JSON events::

        {"type": "progress", "stage": "extracting", "progress": 30}
        {"type": "result", "items": [...], "metadata": {...}}
        {"type": "error", "code": "ocr_error", "message": "..."}

    Transport failures are folded into an EngineOutcome carrying a raw
    error code; only programming errors escape ``detect``.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        model_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = (endpoint or settings.detection_engine_url).rstrip("/")
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.detection_engine_timeout_seconds
        )
        self.model_name = model_name or settings.detection_engine_model
        self.transport = transport

    async def detect(
        self,
        image_bytes: bytes,
        on_progress: Optional[ProgressCallback] = None,
        mime_type: str = "image/jpeg",
    ) -> EngineOutcome:
        """
        Run detection on one image.

        Args:
            image_bytes: Original image bytes
            on_progress: Awaited with (stage, percent) for each progress event
            mime_type: MIME type of the image

        Returns:
            EngineOutcome with items on success or a raw error code
        """
        start_time = time.time()
        try:
            outcome = await self._stream_detection(image_bytes, on_progress, mime_type)
        except httpx.TimeoutException as e:
            logger.warning(f"Detection engine timed out: {e}")
            outcome = EngineOutcome(error_code="timeout", message="Detection engine timed out")
        except httpx.TransportError as e:
            logger.error(f"Detection engine unreachable at {self.endpoint}: {e}")
            outcome = EngineOutcome(
                error_code="service_unavailable", message=f"Detection engine unreachable: {e}"
            )
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Malformed detection engine response: {e}")
            outcome = EngineOutcome(
                error_code="unexpected_error", message="Malformed detection engine response"
            )

        duration = time.time() - start_time
        if outcome.succeeded:
            logger.info(f"Detection engine returned {len(outcome.items)} items in {duration:.2f}s")
        else:
            logger.info(f"Detection engine failed with {outcome.error_code} in {duration:.2f}s")
        return outcome

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def _stream_detection(
        self,
        image_bytes: bytes,
        on_progress: Optional[ProgressCallback],
        mime_type: str,
    ) -> EngineOutcome:
        """Send the image and consume the event stream, retrying only failed connects"""
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self.transport
        ) as client:
            async with client.stream(
                "POST",
                f"{self.endpoint}/detect",
                files={"image": ("image", image_bytes, mime_type)},
                data={"model": self.model_name},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    logger.error(
                        f"Detection engine returned HTTP {response.status_code}: "
                        f"{body[:200]!r}"
                    )
                    return EngineOutcome(
                        error_code=f"http_{response.status_code}",
                        message=f"Detection engine returned HTTP {response.status_code}",
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue

                    event = json.loads(line)
                    outcome = await self._handle_event(event, on_progress)
                    if outcome is not None:
                        return outcome

        return EngineOutcome(
            error_code="incomplete_response",
            message="Detection engine closed the stream without a result",
        )

    @staticmethod
    async def _handle_event(
        event: Dict[str, Any], on_progress: Optional[ProgressCallback]
    ) -> Optional[EngineOutcome]:
        event_type = event.get("type")

        if event_type == "progress":
            if on_progress is not None:
                await on_progress(event.get("stage"), event.get("progress"))
            return None

        if event_type == "result":
            return EngineOutcome(
                items=event.get("items") or [],
                metadata=event.get("metadata"),
            )

        if event_type == "error":
            return EngineOutcome(
                error_code=event.get("code") or "unexpected_error",
                message=event.get("message"),
                metadata=event.get("metadata"),
            )

        logger.debug(f"Ignoring unknown detection engine event: {event_type}")
        return None
