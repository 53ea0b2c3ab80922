# receipt_app/services/extraction.py

import json
import logging
from typing import Any, Dict, Optional, Tuple

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.exceptions import MaxRetryError, ReadTimeoutError
from urllib3.util.retry import Retry

from ..errors import (
    ExtractionFormatError,
    ReceiptShapeError,
    UpstreamError,
    UpstreamTimeoutError,
)
from ..models import ReceiptDocument

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """Extract the receipt and return the following JSON format:
DO NOT include the dollar sign ($) or any other currency symbol.
Capitalize all names.

{
    "items": [
        {
            "name": product_name,
            "price": product_price
        },
        ...
    ],
    "taxes": [
        {
            "name": tax_name,
            "price": tax_price
        },
        ...
    ],
    "total": total
}"""

# Sampling parameters are fixed for every request.
SAMPLING = {
    "temperature": 1,
    "max_tokens": 1000,
    "top_p": 1,
    "frequency_penalty": 0,
    "presence_penalty": 0,
}


def build_session(retries: int) -> requests.Session:
    """
    A session that retries connection failures and 5xx answers a bounded
    number of times with exponential backoff. A read timeout is never
    retried: the completion may already be running (and billed) upstream.
    """
    retry = Retry(
        total=retries,
        read=False,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "POST"}),
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def _is_timeout(e: requests.RequestException) -> bool:
    if isinstance(e, requests.Timeout):
        return True
    # urllib3 wraps a timeout on the last retry in MaxRetryError
    reason = e.args[0] if e.args else None
    return isinstance(reason, MaxRetryError) and isinstance(reason.reason, ReadTimeoutError)


class ExtractionService:
    def __init__(
        self,
        api_key: Optional[str],
        organization_id: Optional[str] = None,
        project_id: Optional[str] = None,
        *,
        model: str = "gpt-4o-2024-08-06",
        api_url: str = "https://api.openai.com/v1/chat/completions",
        timeout: float = 60.0,
        fetch_timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        retries: int = 1,
    ):
        """
        Initializes the extraction client. Credentials are sent as-is; the
        remote service is the one that rejects bad ones.
        """
        self.model = model
        self.api_url = api_url
        self.timeout = timeout
        self.fetch_timeout = fetch_timeout
        self.session = session or build_session(retries)
        self.headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        if organization_id:
            self.headers["OpenAI-Organization"] = organization_id
        if project_id:
            self.headers["OpenAI-Project"] = project_id

    def fetch_image(self, url: str) -> bytes:
        logger.info("Fetching image %s", url)
        try:
            response = self.session.get(url, timeout=self.fetch_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            if _is_timeout(e):
                raise UpstreamTimeoutError(f"Timed out fetching image from {url}")
            raise UpstreamError(f"Could not fetch image from {url}: {e}")
        return response.content

    def build_payload(self, image_url: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": [{"type": "text", "text": SYSTEM_PROMPT}],
                },
                {
                    "role": "user",
                    "content": [{"type": "image_url", "image_url": {"url": image_url}}],
                },
            ],
            **SAMPLING,
            "response_format": {"type": "json_object"},
        }

    def request_completion(self, image_url: str) -> Dict[str, Any]:
        """
        Sends the image to the chat completion endpoint and returns the raw
        response body. The image may be a remote URL or a data URL.
        """
        logger.info("Sending request to %s (model=%s)", self.api_url, self.model)
        try:
            response = self.session.post(
                self.api_url,
                json=self.build_payload(image_url),
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            if _is_timeout(e):
                raise UpstreamTimeoutError(
                    f"The extraction service did not answer within {self.timeout:g} seconds"
                )
            raise UpstreamError(f"The extraction service is unavailable: {e}")

        if not response.ok:
            logger.error("Extraction service answered %s: %s", response.status_code, response.text[:500])
            raise UpstreamError(
                f"The extraction service is unavailable (HTTP {response.status_code})"
            )
        try:
            return response.json()
        except ValueError:
            raise UpstreamError("The extraction service returned a malformed response")

    def parse_completion(self, raw: Dict[str, Any]) -> Tuple[Dict[str, Any], ReceiptDocument]:
        """
        Pulls the receipt JSON out of the first choice and checks it has the
        receipt shape. Returns the parsed object and the validated document.
        """
        try:
            content = raw["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ExtractionFormatError("Invalid receipt data format")
        if not isinstance(content, str):
            raise ExtractionFormatError("Invalid receipt data format")

        # Models sometimes wrap the answer in markdown (```json ... ```)
        clean_json_response = content.strip().replace("```json", "").replace("```", "")
        try:
            parsed = json.loads(clean_json_response)
        except json.JSONDecodeError as e:
            logger.error("Error parsing receipt data: %s", e)
            raise ExtractionFormatError("Invalid receipt data format")

        if not isinstance(parsed, dict):
            raise ReceiptShapeError("Invalid receipt data structure")
        try:
            document = ReceiptDocument.model_validate(parsed)
        except ValidationError as e:
            logger.error("Receipt data has the wrong shape: %s", e)
            raise ReceiptShapeError("Invalid receipt data structure")
        return parsed, document

    def extract(self, image_url: str) -> Tuple[Dict[str, Any], ReceiptDocument]:
        return self.parse_completion(self.request_completion(image_url))
