from __future__ import annotations

from enum import Enum

MISSING_CODE = "."


class Quality(Enum):
    FORECAST = ("forecast", "f", 1)
    ESTIMATED = ("estimated", "e", 2)
    ACTUAL = ("actual", "a", 3)
    BILLABLE = ("billable", "b", 4)

    def __init__(self, label: str, code: str, rank: int) -> None:
        self.label = label
        self.code = code
        self.rank = rank

    @property
    def precedence(self) -> int:
        return self.rank

    @classmethod
    def parse(cls, value: "Quality | str | None") -> "Quality | None":
        if value is None or isinstance(value, Quality):
            return value
        text = str(value).strip().lower()
        if text == "":
            return None
        for quality in cls:
            if text == quality.code or text == quality.label:
                return quality
        return None


TOP_TIER = Quality.BILLABLE


def precedence(quality: Quality | str | None) -> int:
    parsed = Quality.parse(quality)
    return parsed.precedence if parsed is not None else 0


def encode(quality: Quality | str | None) -> str:
    if quality is None:
        return MISSING_CODE
    parsed = Quality.parse(quality)
    if parsed is not None:
        return parsed.code
    text = str(quality).strip()
    if text == "":
        return MISSING_CODE
    # unknown tiers stay visible in overviews but rank below forecast
    return text[0].lower()


def decode(code: str | None) -> Quality | None:
    if code is None or code == MISSING_CODE:
        return None
    return Quality.parse(code)
