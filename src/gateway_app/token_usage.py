import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


EMPTY_USAGE = TokenUsage()


class UsageStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class UsageExtraction:
    """Outcome of reading a usage block out of an upstream payload."""

    status: UsageStatus
    usage: TokenUsage = EMPTY_USAGE
    detail: str | None = None

    @classmethod
    def present(cls, usage: TokenUsage) -> "UsageExtraction":
        return cls(status=UsageStatus.PRESENT, usage=usage)

    @classmethod
    def absent(cls) -> "UsageExtraction":
        return cls(status=UsageStatus.ABSENT)

    @classmethod
    def malformed(cls, detail: str) -> "UsageExtraction":
        return cls(status=UsageStatus.MALFORMED, detail=detail)

    @property
    def is_present(self) -> bool:
        return self.status is UsageStatus.PRESENT


def _token_count(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not a token count")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"unsupported token count type {type(value).__name__}")


def parse_usage_block(usage: Any) -> UsageExtraction:
    if usage is None:
        return UsageExtraction.absent()
    if not isinstance(usage, dict):
        return UsageExtraction.malformed(f"usage is {type(usage).__name__}, not an object")

    try:
        prompt = _token_count(usage.get("prompt_tokens", 0) or 0)
        completion = _token_count(usage.get("completion_tokens", 0) or 0)
        raw_total = usage.get("total_tokens")
        # A reported total is kept as-is even when it disagrees with the parts.
        total = prompt + completion if raw_total is None else _token_count(raw_total)
    except (TypeError, ValueError) as exc:
        return UsageExtraction.malformed(str(exc))

    return UsageExtraction.present(
        TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
    )


def extract_usage_from_response(body: Any) -> UsageExtraction:
    if not isinstance(body, dict):
        return UsageExtraction.malformed("response body is not a JSON object")
    return parse_usage_block(body.get("usage"))


def parse_sse_data(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    payload = stripped[len("data:"):].strip()
    if not payload or payload == "[DONE]":
        return None
    return payload


def extract_usage_from_stream_line(line: str) -> UsageExtraction | None:
    """Returns None for lines that carry no JSON chunk (comments, events, [DONE])."""
    payload = parse_sse_data(line)
    if payload is None:
        return None
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as exc:
        return UsageExtraction.malformed(f"invalid JSON chunk: {exc.msg}")
    return extract_usage_from_response(chunk)


@dataclass
class StreamUsageTracker:
    usage: TokenUsage = EMPTY_USAGE
    saw_usage: bool = False
    malformed_chunks: int = 0
    last_malformed_detail: str | None = None

    def ingest_line(self, line: str) -> None:
        extraction = extract_usage_from_stream_line(line)
        if extraction is None:
            return
        if extraction.is_present:
            self.usage = extraction.usage
            self.saw_usage = True
        elif extraction.status is UsageStatus.MALFORMED:
            self.malformed_chunks += 1
            self.last_malformed_detail = extraction.detail
