"""
Client for the IDM-VTON virtual try-on API.

A single POST per try-on. Success is a 200 carrying JPEG bytes; every other
outcome is mapped onto a TryOnError subclass whose status code and message
are what our own callers see.
"""
import logging
import random
from dataclasses import dataclass, field
from typing import Dict, Optional

import requests

from config import SEGMIND_API_KEY, SEGMIND_API_URL, UPSTREAM_TIMEOUT
from schemas import TryOnErrorResponse

logger = logging.getLogger(__name__)

SUCCESS_CONTENT_TYPE = "image/jpeg"
DENOISE_STEPS = 30
SEED_RANGE = 1000

# Upstream usage headers
REMAINING_CREDITS_HEADER = "x-remaining-credits"
RATE_LIMIT_REMAINING_HEADER = "x-rate-limit-remaining"
RATE_LIMIT_RESET_HEADER = "x-rate-limit-reset-at-utc"


@dataclass(frozen=True)
class UpstreamUsage:
    """Quota state reported by the upstream on every response"""
    remaining_credits: Optional[str] = None
    rate_limit_remaining: Optional[str] = None
    rate_limit_reset: Optional[str] = None

    @classmethod
    def from_headers(cls, headers) -> "UpstreamUsage":
        return cls(
            remaining_credits=headers.get(REMAINING_CREDITS_HEADER),
            rate_limit_remaining=headers.get(RATE_LIMIT_REMAINING_HEADER),
            rate_limit_reset=headers.get(RATE_LIMIT_RESET_HEADER),
        )

    def as_headers(self) -> Dict[str, str]:
        headers = {
            "X-Remaining-Credits": self.remaining_credits,
            "X-Rate-Limit-Remaining": self.rate_limit_remaining,
            "X-Rate-Limit-Reset-At-UTC": self.rate_limit_reset,
        }
        return {name: value for name, value in headers.items() if value is not None}


@dataclass(frozen=True)
class TryOnRequest:
    model_image: str
    garment_image: str
    category: str = "upper_body"
    description: str = ""


@dataclass(frozen=True)
class TryOnResult:
    content: bytes
    content_type: str = SUCCESS_CONTENT_TYPE
    usage: UpstreamUsage = field(default_factory=UpstreamUsage)


class TryOnError(Exception):
    status_code = 500
    default_message = "Error processing try-on request"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None,
                 usage: Optional[UpstreamUsage] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.usage = usage or UpstreamUsage()
        super().__init__(self.message)

    @property
    def is_rate_limit(self) -> bool:
        return False

    def to_dict(self) -> dict:
        body = TryOnErrorResponse(
            message=self.message,
            isRateLimit=self.is_rate_limit,
            remainingCredits=self.usage.remaining_credits,
            rateLimitReset=self.usage.rate_limit_reset,
        )
        return body.model_dump(exclude_none=True)


class GatewayNotConfigured(TryOnError):
    status_code = 503
    default_message = "try-on service is not configured"


class UpstreamAuthError(TryOnError):
    status_code = 401
    default_message = "invalid API key"


class UpstreamNotFound(TryOnError):
    status_code = 404
    default_message = "endpoint not found"


class UpstreamBadMethod(TryOnError):
    status_code = 405
    default_message = "invalid request method"


class UpstreamQuotaExceeded(TryOnError):
    status_code = 406
    default_message = "insufficient credits"


class UpstreamRateLimited(TryOnError):
    status_code = 429
    default_message = "rate limit exceeded"

    @property
    def is_rate_limit(self) -> bool:
        return True


class UpstreamInternalError(TryOnError):
    status_code = 500
    default_message = "try again later"


class UpstreamUnreachable(TryOnError):
    status_code = 502
    default_message = "no response received from try-on service"


class UpstreamProtocolError(TryOnError):
    status_code = 502
    default_message = "invalid response from try-on service"


_STATUS_ERRORS = {
    401: UpstreamAuthError,
    404: UpstreamNotFound,
    405: UpstreamBadMethod,
    406: UpstreamQuotaExceeded,
    500: UpstreamInternalError,
}


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def _error_text(response: requests.Response) -> Optional[str]:
    """Best effort message from an upstream error body"""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip() if response.content else ""
        return text[:500] or None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message[:500]
    return None


def error_for_response(response: requests.Response) -> TryOnError:
    """Map a non-success upstream response onto the local error taxonomy"""
    usage = UpstreamUsage.from_headers(response.headers)
    status = response.status_code

    if status == 429:
        if not usage.rate_limit_reset:
            return UpstreamRateLimited(usage=usage)
        return UpstreamRateLimited(
            f"rate limit exceeded, try again after {usage.rate_limit_reset}", usage=usage
        )
    if status in _STATUS_ERRORS:
        return _STATUS_ERRORS[status](usage=usage)
    if status < 400:
        return UpstreamProtocolError(usage=usage)
    return UpstreamUnreachable(
        _error_text(response) or "unexpected response from try-on service",
        status_code=status,
        usage=usage,
    )


class TryOnGateway:
    """Builds the upstream payload and translates the upstream's answer"""

    def __init__(
        self,
        api_key: Optional[str] = SEGMIND_API_KEY,
        api_url: str = SEGMIND_API_URL,
        timeout: float = UPSTREAM_TIMEOUT,
        http=None,
        rng: Optional[random.Random] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self.http = http or requests.Session()
        self.rng = rng or random.Random()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, request: TryOnRequest) -> dict:
        return {
            "crop": False,
            "seed": self.rng.randrange(SEED_RANGE),
            "steps": DENOISE_STEPS,
            "category": request.category,
            "force_dc": False,
            "human_img": request.model_image,
            "garm_img": request.garment_image,
            "mask_only": False,
            "garment_des": request.description,
        }

    def generate(self, request: TryOnRequest) -> TryOnResult:
        if not self.configured:
            raise GatewayNotConfigured()

        payload = self.build_payload(request)
        logger.info(
            "Sending try-on request: category=%s seed=%s human_img=%s... garm_img=%s...",
            payload["category"], payload["seed"],
            payload["human_img"][:50], payload["garm_img"][:50],
        )

        try:
            response = self.http.post(
                self.api_url,
                json=payload,
                headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("No response from try-on API: %s", e)
            raise UpstreamUnreachable() from e

        usage = UpstreamUsage.from_headers(response.headers)
        logger.info(
            "Try-on API usage: remaining_credits=%s rate_limit_remaining=%s rate_limit_reset=%s",
            usage.remaining_credits, usage.rate_limit_remaining, usage.rate_limit_reset,
        )

        content_type = response.headers.get("content-type")
        if response.status_code == 200:
            if _media_type(content_type) == SUCCESS_CONTENT_TYPE:
                return TryOnResult(content=response.content, usage=usage)
            logger.error("Unexpected try-on response: status=200 content_type=%s", content_type)
            raise UpstreamProtocolError(usage=usage)

        error = error_for_response(response)
        logger.error(
            "Try-on API error: status=%s kind=%s message=%s",
            response.status_code, type(error).__name__, error.message,
        )
        raise error
