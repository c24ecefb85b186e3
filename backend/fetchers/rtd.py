from __future__ import annotations

import gzip
import json
import logging
import math
from typing import Any, List, Mapping, Optional, Tuple, Union

import requests
from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.transit import gtfs_realtime_pb2

from backend.errors import DecodeError, UpstreamUnavailable
from backend.models import SOURCE_GTFS_RT, SOURCE_JSON, DecodedFeed, RawArrival, VehicleFix


logger = logging.getLogger(__name__)

Payload = Union[bytes, str, Mapping[str, Any]]

GZIP_MAGIC = b"\x1f\x8b"

# 2100-01-01T00:00:00Z; anything later is a corrupt prediction, not a schedule.
MAX_EPOCH_SECONDS = 4_102_444_800


def _coerce_epoch(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def _coerce_direction(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _decode_json_entry(entry: Any, platform_id: str) -> RawArrival:
    if not isinstance(entry, Mapping):
        raise DecodeError("Arrival entry is not an object.")

    route_id = entry.get("routeId")
    if route_id is None or not str(route_id).strip():
        raise DecodeError("Arrival entry missing routeId.")

    arrival_ts = _coerce_epoch(entry.get("arrivalTime"))
    if arrival_ts is not None:
        epoch = arrival_ts
        formatted = entry.get("arrivalTimeFormatted")
    else:
        epoch = _coerce_epoch(entry.get("departureTime"))
        formatted = entry.get("departureTimeFormatted")
    if epoch is None:
        raise DecodeError("Arrival entry has neither arrivalTime nor departureTime.")
    if epoch < 0:
        raise DecodeError(f"Arrival entry has negative time {epoch}.")
    if epoch > MAX_EPOCH_SECONDS:
        raise DecodeError(f"Arrival entry time {epoch} is out of range.")

    stop_id = entry.get("stopId")
    return RawArrival(
        route_id=str(route_id).strip(),
        trip_id=str(entry.get("tripId") or "").strip(),
        direction_id=_coerce_direction(entry.get("directionId")),
        epoch_seconds=epoch,
        platform_id=str(stop_id).strip() if stop_id else platform_id,
        time_formatted=formatted if isinstance(formatted, str) else None,
    )


def decode_json_arrivals(payload: Payload, platform_id: str) -> DecodedFeed:
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise DecodeError(f"Arrivals payload for {platform_id} is not valid JSON.") from exc
    if not isinstance(payload, Mapping):
        raise DecodeError(f"Arrivals payload for {platform_id} is not an object.")
    entries = payload.get("arrivals")
    if not isinstance(entries, list):
        raise DecodeError(f"Arrivals payload for {platform_id} missing arrivals list.")

    arrivals: List[RawArrival] = []
    skipped = 0
    for entry in entries:
        try:
            arrivals.append(_decode_json_entry(entry, platform_id))
        except DecodeError as exc:
            skipped += 1
            logger.debug("Skipping arrival entry at %s: %s", platform_id, exc)
    if entries and not arrivals:
        raise DecodeError(f"Every arrival entry for {platform_id} was malformed.")
    if skipped:
        logger.warning("Skipped %s malformed arrival entries at %s.", skipped, platform_id)

    stop_name = payload.get("stopName")
    return DecodedFeed(
        platform_id=platform_id,
        arrivals=tuple(arrivals),
        feed_timestamp=_header_seconds(payload.get("timestamp")),
        stop_name=stop_name if isinstance(stop_name, str) and stop_name else None,
        skipped_entries=skipped,
    )


def _header_seconds(value: Any) -> Optional[int]:
    epoch = _coerce_epoch(value)
    if epoch is None or epoch <= 0:
        return None
    # The JSON feed reports milliseconds.
    if epoch > 10_000_000_000:
        epoch //= 1000
    return epoch


def parse_feed_message(payload: bytes) -> gtfs_realtime_pb2.FeedMessage:
    if not isinstance(payload, (bytes, bytearray)):
        raise DecodeError("GTFS-RT payload must be bytes.")
    raw = bytes(payload)
    if raw[:2] == GZIP_MAGIC:
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError) as exc:
            raise DecodeError("GTFS-RT payload is not valid gzip.") from exc
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(raw)
    except ProtobufDecodeError as exc:
        raise DecodeError(f"GTFS-RT payload could not be parsed: {exc}") from exc
    return feed


def _trip_updates_for_stop(
    feed: gtfs_realtime_pb2.FeedMessage, platform_id: str
) -> Tuple[List[RawArrival], int]:
    arrivals: List[RawArrival] = []
    skipped = 0
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue
        trip = entity.trip_update.trip
        direction_id = trip.direction_id if trip.HasField("direction_id") else None
        for update in entity.trip_update.stop_time_update:
            if update.stop_id != platform_id:
                continue
            # Distant stops often carry no arrival prediction.
            if not update.HasField("arrival") or not update.arrival.HasField("time"):
                continue
            epoch = int(update.arrival.time)
            if not 0 <= epoch <= MAX_EPOCH_SECONDS:
                skipped += 1
                continue
            arrivals.append(
                RawArrival(
                    route_id=trip.route_id,
                    trip_id=trip.trip_id,
                    direction_id=direction_id,
                    epoch_seconds=epoch,
                    platform_id=platform_id,
                )
            )
    return arrivals, skipped


def decode_trip_updates(
    payload: Union[bytes, gtfs_realtime_pb2.FeedMessage], platform_id: str
) -> DecodedFeed:
    feed = payload if isinstance(payload, gtfs_realtime_pb2.FeedMessage) else parse_feed_message(payload)
    header_ts = int(feed.header.timestamp) if feed.header.HasField("timestamp") else None
    arrivals, skipped = _trip_updates_for_stop(feed, platform_id)
    if skipped:
        logger.warning("Skipped %s out-of-range trip updates at %s.", skipped, platform_id)
    return DecodedFeed(
        platform_id=platform_id,
        arrivals=tuple(arrivals),
        feed_timestamp=header_ts or None,
        skipped_entries=skipped,
    )


def decode(payload: Any, source_kind: str, platform_id: str) -> DecodedFeed:
    """Decode one upstream transit response into arrivals for ``platform_id``.

    Raises DecodeError when the payload cannot be parsed as ``source_kind``.
    """

    if source_kind == SOURCE_JSON:
        return decode_json_arrivals(payload, platform_id)
    if source_kind == SOURCE_GTFS_RT:
        return decode_trip_updates(payload, platform_id)
    raise ValueError(f"Unsupported source kind: {source_kind}")


def decode_vehicle_positions(payload: bytes) -> Tuple[List[VehicleFix], Optional[int]]:
    feed = parse_feed_message(payload)
    fixes: List[VehicleFix] = []
    for entity in feed.entity:
        if not entity.HasField("vehicle"):
            continue
        vehicle = entity.vehicle
        if not vehicle.HasField("position"):
            continue
        trip = vehicle.trip
        route_id = trip.route_id if vehicle.HasField("trip") else ""
        if not route_id:
            continue
        direction_id = trip.direction_id if trip.HasField("direction_id") else None
        label = vehicle.vehicle.label or vehicle.vehicle.id or entity.id
        fixes.append(
            VehicleFix(
                route_id=route_id,
                direction_id=direction_id,
                latitude=float(vehicle.position.latitude),
                longitude=float(vehicle.position.longitude),
                label=label,
                trip_id=trip.trip_id or None,
            )
        )
    header_ts = int(feed.header.timestamp) if feed.header.HasField("timestamp") else None
    return fixes, header_ts or None


def _get(url: str, timeout_seconds: float, **kwargs: Any) -> requests.Response:
    try:
        response = requests.get(url, timeout=timeout_seconds, **kwargs)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise UpstreamUnavailable(f"Request to {url} failed: {exc}") from exc
    return response


def fetch_json_arrivals(base_url: str, stop_id: str, timeout_seconds: float) -> DecodedFeed:
    url = f"{base_url.rstrip('/')}/{stop_id}"
    response = _get(url, timeout_seconds, headers={"Accept": "application/json"})
    return decode_json_arrivals(response.content, stop_id)


def fetch_feed_message(url: str, timeout_seconds: float) -> gtfs_realtime_pb2.FeedMessage:
    response = _get(url, timeout_seconds)
    feed = parse_feed_message(response.content)
    logger.info("GTFS-RT feed %s has %s entities", url, len(feed.entity))
    return feed


def fetch_vehicle_positions(url: str, timeout_seconds: float) -> Tuple[List[VehicleFix], Optional[int]]:
    response = _get(url, timeout_seconds)
    return decode_vehicle_positions(response.content)
