from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

ChannelType = Literal["general", "feedIn", "controlledLoad"]
ChannelMetric = Literal["energy", "value", "rate"]

GRID_ORIGIN_ID = "grid"

_CHANNEL_CONFIG: dict[str, tuple[str, str]] = {
    "general": ("import", "Grid import"),
    "feedIn": ("export", "Grid export"),
    "controlledLoad": ("controlled", "Controlled load"),
}

_METRIC_CONFIG: dict[str, tuple[str, str]] = {
    "energy": ("kwh", "Wh"),
    "value": ("cost", "cents"),
    "rate": ("perKwh", "cents_kWh"),
}

_CHANNEL_ID_BY_TYPE: dict[str, str] = {
    "general": "E1",
    "feedIn": "B1",
}

_TARIFF_PERIOD_ABBREVIATIONS: dict[str, str] = {
    "peak": "pk",
    "offPeak": "op",
    "shoulder": "sh",
    "solarSponge": "ss",
}


@dataclass(frozen=True)
class PointMetadata:
    origin_id: str
    origin_sub_id: str
    default_name: str
    subsystem: str
    metric_type: str
    metric_unit: str
    type: str = "bidi"
    subtype: str = "grid"
    extension: str | None = None
    transform: str | None = None

    @property
    def point_key(self) -> str:
        return f"{self.origin_id}.{self.origin_sub_id}"


@dataclass(frozen=True)
class ChannelMetadata:
    channel_id: str
    channel_type: str
    extension: str
    default_name: str


def get_channel_metadata(channel_id: str, channel_type: str) -> ChannelMetadata:
    extension, default_name = _CHANNEL_CONFIG.get(channel_type, ("other", f"Channel {channel_id}"))
    return ChannelMetadata(
        channel_id=channel_id,
        channel_type=channel_type,
        extension=extension,
        default_name=default_name,
    )


def channel_id_for_type(channel_type: str) -> str:
    return _CHANNEL_ID_BY_TYPE.get(channel_type, channel_type)


def channel_point(channel: ChannelMetadata, metric: ChannelMetric) -> PointMetadata:
    sub_id, unit = _METRIC_CONFIG[metric]
    return PointMetadata(
        origin_id=channel.channel_id,
        origin_sub_id=sub_id,
        default_name=channel.default_name,
        subsystem="grid",
        extension=channel.extension,
        metric_type=metric,
        metric_unit=unit,
    )


def renewables_point() -> PointMetadata:
    return PointMetadata(
        origin_id=GRID_ORIGIN_ID,
        origin_sub_id="renewables",
        default_name="Grid renewables",
        subsystem="grid",
        extension="renewables",
        metric_type="proportion",
        metric_unit="%",
    )


def spot_price_point() -> PointMetadata:
    return PointMetadata(
        origin_id=GRID_ORIGIN_ID,
        origin_sub_id="spotPerKwh",
        default_name="Grid spot price",
        subsystem="grid",
        extension="spot",
        metric_type="rate",
        metric_unit="cents_kWh",
    )


def tariff_period_point() -> PointMetadata:
    return PointMetadata(
        origin_id=GRID_ORIGIN_ID,
        origin_sub_id="tariffPeriod",
        default_name="Tariff period",
        subsystem="grid",
        extension="tariff",
        metric_type="code",
        metric_unit="text",
    )


def abbreviate_tariff_period(period: str | None) -> str | None:
    if not period:
        return None
    return _TARIFF_PERIOD_ABBREVIATIONS.get(period, period)
