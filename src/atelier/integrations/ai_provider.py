"""HTTP client for an OpenAI-compatible image and vision API."""

import base64
import logging

import httpx

from atelier.errors.exceptions import PermanentExecutionError, TransientExecutionError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


class AIProvider:
    """Thin async wrapper that classifies every failure as transient or permanent."""

    def __init__(
        self,
        api_base: str,
        api_key: str,
        image_model: str,
        vision_model: str,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
        download_client: httpx.AsyncClient | None = None,
    ):
        self.image_model = image_model
        self.vision_model = vision_model
        self._client = client or httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
        )
        # Asset URLs can point anywhere, so downloads never carry the API key
        self._download_client = download_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @classmethod
    def from_settings(cls, settings) -> "AIProvider":
        return cls(
            api_base=settings.ai_api_base,
            api_key=settings.ai_api_key,
            image_model=settings.ai_image_model,
            vision_model=settings.ai_vision_model,
            timeout=settings.ai_timeout_seconds,
        )

    async def generate_image(self, prompt: str, size: str, model: str | None = None) -> bytes:
        data = await self._post_json("/images/generations", {
            "model": model or self.image_model,
            "prompt": prompt,
            "size": size,
            "n": 1,
        })
        return await self._image_bytes(data)

    async def edit_image(self, image: bytes, prompt: str, size: str, mask: bytes | None = None) -> bytes:
        files = {"image": ("image.png", image, "image/png")}
        if mask is not None:
            files["mask"] = ("mask.png", mask, "image/png")
        data = await self._request(
            "POST",
            "/images/edits",
            data={"model": self.image_model, "prompt": prompt, "size": size, "n": "1"},
            files=files,
        )
        return await self._image_bytes(data)

    async def describe_image(self, image_url: str, detail: str = "auto") -> str:
        data = await self._post_json("/chat/completions", {
            "model": self.vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Describe this image for alt text and search in two sentences."},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": detail}},
                    ],
                }
            ],
        })
        try:
            return data["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise PermanentExecutionError(f"Unexpected describe response: {exc}", "BAD_RESPONSE")

    async def download(self, url: str) -> bytes:
        try:
            scheme = httpx.URL(url).scheme
        except httpx.InvalidURL:
            scheme = None
        if scheme not in ("http", "https"):
            raise PermanentExecutionError(f"Cannot download {url}: not an http(s) URL", "INVALID_ASSET_URL")
        try:
            response = await self._download_client.get(url)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientExecutionError(f"Download of {url} failed: {exc}", "NETWORK_ERROR")
        self._raise_for_status(response)
        return response.content

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._download_client.aclose()

    async def _post_json(self, path: str, body: dict) -> dict:
        return await self._request("POST", path, json=body)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientExecutionError(f"AI provider timed out: {exc}", "TIMEOUT")
        except httpx.TransportError as exc:
            raise TransientExecutionError(f"AI provider unreachable: {exc}", "NETWORK_ERROR")
        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientExecutionError(f"AI provider returned invalid JSON: {exc}", "BAD_RESPONSE")

    async def _image_bytes(self, data: dict) -> bytes:
        try:
            item = data["data"][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise PermanentExecutionError(f"Unexpected image response: {exc}", "BAD_RESPONSE")
        if item.get("b64_json"):
            return base64.b64decode(item["b64_json"])
        if item.get("url"):
            return await self.download(item["url"])
        raise PermanentExecutionError("Image response had neither b64_json nor url", "BAD_RESPONSE")

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        detail = response.text[:500]
        if response.status_code in _TRANSIENT_STATUS:
            code = "RATE_LIMITED" if response.status_code == 429 else "UPSTREAM_UNAVAILABLE"
            raise TransientExecutionError(
                f"AI provider returned {response.status_code}: {detail}", code,
            )
        raise PermanentExecutionError(
            f"AI provider rejected request ({response.status_code}): {detail}", "POLICY_REJECTED",
        )
