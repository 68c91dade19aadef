"""Text-to-image generation for privileged users.

Calls the Workers AI REST API, e.g.::

    https://api.cloudflare.com/client/v4/accounts/<account>/ai/run/@cf/black-forest-labs/flux-1-schnell

which answers ``{"result": {"image": "<base64 JPEG>"}, "success": true}``.
"""

from __future__ import annotations

import base64
import binascii
from typing import Final

import httpx
from pydantic import SecretStr

from authbridge.exceptions import UpstreamError
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)

MIN_STEPS: Final[int] = 4
MAX_STEPS: Final[int] = 8
IMAGE_TIMEOUT_SECONDS: Final[float] = 60.0


class ImageGenerator:
    """Client for a hosted ``flux-1-schnell`` model.

    Args:
        endpoint: Full model run URL.
        api_token: Bearer token for the model API.
        timeout_seconds: Timeout for one generation request.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        api_token: str | SecretStr,
        timeout_seconds: float = IMAGE_TIMEOUT_SECONDS,
    ):
        if isinstance(api_token, str):
            api_token = SecretStr(api_token)
        self.endpoint = endpoint
        self._api_token = api_token
        self.timeout_seconds = timeout_seconds

    async def generate(self, prompt: str, steps: int = MIN_STEPS) -> bytes:
        """Return the JPEG bytes generated for ``prompt``.

        Raises:
            UpstreamError: transport failure, non-200 status or a body
                without a base64 image.
        """
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as http_client:
            try:
                response = await http_client.post(
                    self.endpoint,
                    json={"prompt": prompt, "steps": steps},
                    headers={
                        "Authorization": f"Bearer {self._api_token.get_secret_value()}"
                    },
                )
            except httpx.RequestError as e:
                logger.error("Failed to reach image model: %s", e)
                raise UpstreamError("Unable to connect to the image model") from e

        if response.status_code != 200:
            logger.error(
                "Image generation failed: %d - %s",
                response.status_code,
                response.text[:200],
            )
            raise UpstreamError(
                f"Image generation failed with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            image = response.json()["result"]["image"]
            return base64.b64decode(image, validate=True)
        except (ValueError, KeyError, TypeError, binascii.Error) as e:
            raise UpstreamError("Malformed response from the image model") from e
