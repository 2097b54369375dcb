from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin, urlparse
from urllib.request import Request, urlopen

from jsonschema import Draft202012Validator

_NUMBER = {"type": "number"}
_OPTIONAL_NUMBER = {"type": ["number", "null"]}

USAGE_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["channelIdentifier", "channelType", "endTime", "kwh", "perKwh", "cost"],
        "properties": {
            "channelIdentifier": {"type": "string", "minLength": 1},
            "channelType": {"type": "string", "minLength": 1},
            "endTime": {"type": "string"},
            "quality": {"type": ["string", "null"]},
            "kwh": _NUMBER,
            "perKwh": _NUMBER,
            "cost": _NUMBER,
            "renewables": _OPTIONAL_NUMBER,
            "spotPerKwh": _OPTIONAL_NUMBER,
        },
    },
}

PRICES_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["type", "channelType", "endTime", "perKwh"],
        "properties": {
            "type": {"type": "string", "minLength": 1},
            "channelType": {"type": "string", "minLength": 1},
            "endTime": {"type": "string"},
            "nemTime": {"type": ["string", "null"]},
            "perKwh": _NUMBER,
            "renewables": _OPTIONAL_NUMBER,
            "spotPerKwh": _OPTIONAL_NUMBER,
            "estimate": {"type": ["boolean", "null"]},
        },
    },
}

_USAGE_VALIDATOR = Draft202012Validator(USAGE_PAYLOAD_SCHEMA)
_PRICES_VALIDATOR = Draft202012Validator(PRICES_PAYLOAD_SCHEMA)


class AmberApiError(RuntimeError):
    def __init__(self, *, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Amber API error {status_code}: {detail}")


@dataclass(frozen=True)
class AmberChannel:
    identifier: str
    type: str
    tariff: str | None = None


@dataclass(frozen=True)
class AmberSite:
    id: str
    nmi: str | None
    network: str | None
    status: str | None
    channels: tuple[AmberChannel, ...]
    interval_length: int = 30

    @classmethod
    def from_payload(cls, payload: Any) -> "AmberSite":
        if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
            raise AmberApiError(status_code=502, detail="Amber site payload has no id")
        channels = []
        for item in payload.get("channels") or []:
            if not isinstance(item, dict) or not isinstance(item.get("identifier"), str):
                continue
            channels.append(
                AmberChannel(
                    identifier=item["identifier"],
                    type=str(item.get("type", "general")),
                    tariff=item.get("tariff"),
                )
            )
        return cls(
            id=payload["id"],
            nmi=payload.get("nmi"),
            network=payload.get("network"),
            status=payload.get("status"),
            channels=tuple(channels),
            interval_length=int(payload.get("intervalLength") or 30),
        )


@dataclass(frozen=True)
class AmberUsageRecord:
    channel_identifier: str
    channel_type: str
    end_time: datetime
    quality: str | None
    kwh: float
    per_kwh: float
    cost: float
    renewables: float | None = None
    spot_per_kwh: float | None = None
    tariff_period: str | None = None
    duration: int = 30

    @classmethod
    def from_payload(cls, payload: Any) -> "AmberUsageRecord":
        if not isinstance(payload, dict):
            raise AmberApiError(status_code=502, detail="Amber usage record is not a JSON object")
        tariff = payload.get("tariffInformation")
        return cls(
            channel_identifier=_require_str(payload, "channelIdentifier"),
            channel_type=_require_str(payload, "channelType"),
            end_time=_require_datetime(payload, "endTime"),
            quality=payload.get("quality"),
            kwh=_require_float(payload, "kwh"),
            per_kwh=_require_float(payload, "perKwh"),
            cost=_require_float(payload, "cost"),
            renewables=_optional_float(payload.get("renewables")),
            spot_per_kwh=_optional_float(payload.get("spotPerKwh")),
            tariff_period=tariff.get("period") if isinstance(tariff, dict) else None,
            duration=int(payload.get("duration") or 30),
        )


@dataclass(frozen=True)
class AmberPriceRecord:
    type: str
    channel_type: str
    end_time: datetime
    per_kwh: float
    spot_per_kwh: float | None = None
    renewables: float | None = None
    estimate: bool | None = None

    @property
    def quality(self) -> str:
        if self.type in ("ActualInterval", "CurrentInterval"):
            return "actual"
        if self.type == "ForecastInterval":
            return "forecast"
        return "unknown"

    @classmethod
    def from_payload(cls, payload: Any) -> "AmberPriceRecord":
        if not isinstance(payload, dict):
            raise AmberApiError(status_code=502, detail="Amber price record is not a JSON object")
        # nemTime is the interval end on the fixed +10:00 market clock
        time_key = "nemTime" if payload.get("nemTime") else "endTime"
        estimate = payload.get("estimate")
        return cls(
            type=_require_str(payload, "type"),
            channel_type=_require_str(payload, "channelType"),
            end_time=_require_datetime(payload, time_key),
            per_kwh=_require_float(payload, "perKwh"),
            spot_per_kwh=_optional_float(payload.get("spotPerKwh")),
            renewables=_optional_float(payload.get("renewables")),
            estimate=bool(estimate) if estimate is not None else None,
        )


class AmberClient:
    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float = 20.0):
        self._base_url = base_url.rstrip("/") + "/"
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    def get_sites(self) -> list[AmberSite]:
        payload = self._request_json("GET", "sites")
        if not isinstance(payload, list):
            raise AmberApiError(status_code=502, detail="Amber sites payload is not a JSON array")
        return [AmberSite.from_payload(item) for item in payload]

    def get_usage(self, *, site_id: str, first_day: date, last_day: date) -> list[AmberUsageRecord]:
        payload = self._request_json(
            "GET",
            f"sites/{site_id}/usage",
            query=_date_range_query(first_day, last_day),
        )
        _validate_payload(payload, _USAGE_VALIDATOR, resource="usage")
        return [AmberUsageRecord.from_payload(item) for item in payload]

    def get_prices(self, *, site_id: str, first_day: date, last_day: date) -> list[AmberPriceRecord]:
        payload = self._request_json(
            "GET",
            f"sites/{site_id}/prices",
            query=_date_range_query(first_day, last_day),
        )
        _validate_payload(payload, _PRICES_VALIDATOR, resource="prices")
        return [AmberPriceRecord.from_payload(item) for item in payload]

    def describe_request(self, *, resource: str, site_id: str, first_day: date, last_day: date) -> str:
        base_path = urlparse(self._base_url).path.rstrip("/")
        query = urlencode(_date_range_query(first_day, last_day))
        return f"GET {base_path}/sites/{site_id}/{resource}?{query}"

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
    ) -> Any:
        status_code, content_type, body = self._request_raw(method, path, query=query)
        if status_code not in (200, 201):
            raise AmberApiError(status_code=status_code, detail=body or "Unexpected Amber response")
        if "application/json" not in content_type.lower():
            raise AmberApiError(status_code=502, detail=f"Unexpected Amber content type: {content_type!r}")
        try:
            return json.loads(body) if body else []
        except json.JSONDecodeError as exc:
            raise AmberApiError(status_code=502, detail=f"Invalid Amber JSON response: {exc}") from exc

    def _request_raw(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
    ) -> tuple[int, str, str]:
        url = urljoin(self._base_url, path.lstrip("/"))
        if query:
            filtered = {k: v for k, v in query.items() if v is not None}
            if filtered:
                url = f"{url}?{urlencode(filtered, doseq=True)}"

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }
        request = Request(url=url, method=method.upper(), headers=headers)
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="replace")
                return response.status, response.headers.get("content-type", ""), body
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise AmberApiError(status_code=exc.code, detail=detail or str(exc.reason))
        except URLError as exc:
            raise AmberApiError(status_code=503, detail=str(exc))
        except TimeoutError as exc:
            raise AmberApiError(status_code=504, detail=str(exc))


def _validate_payload(payload: Any, validator: Draft202012Validator, *, resource: str) -> None:
    schema_errors = sorted(validator.iter_errors(payload), key=lambda item: list(item.path))
    if not schema_errors:
        return
    messages: list[str] = []
    for schema_error in schema_errors[:5]:
        path = ".".join(str(part) for part in schema_error.path)
        location = path if path else "$"
        messages.append(f"{location}: {schema_error.message}")
    raise AmberApiError(
        status_code=502,
        detail=f"Invalid Amber {resource} payload: " + "; ".join(messages),
    )


def _date_range_query(first_day: date, last_day: date) -> dict[str, str]:
    return {"startDate": first_day.isoformat(), "endDate": last_day.isoformat()}


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or value.strip() == "":
        raise AmberApiError(status_code=502, detail=f"Amber record is missing '{key}'")
    return value


def _require_float(payload: dict[str, Any], key: str) -> float:
    value = _optional_float(payload.get(key))
    if value is None:
        raise AmberApiError(status_code=502, detail=f"Amber record has no numeric '{key}'")
    return value


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _require_datetime(payload: dict[str, Any], key: str) -> datetime:
    parsed = _parse_datetime(payload.get(key))
    if parsed is None:
        raise AmberApiError(status_code=502, detail=f"Amber record has no valid '{key}' timestamp")
    return parsed


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text == "":
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
