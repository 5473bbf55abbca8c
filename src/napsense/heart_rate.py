"""Live heart rate from a standard BLE heart-rate monitor.

Any chest strap or watch that exposes the Bluetooth SIG Heart Rate service
(0x180D) pushes Heart Rate Measurement notifications (0x2A37).  This module
parses them and adapts the stream to the engine's heart-rate source contract.
"""

from __future__ import annotations

import logging
import struct
from datetime import datetime
from typing import Callable

import numpy as np
from bleak import BleakClient
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.exc import BleakError

from napsense.detection.models import HeartRateSample
from napsense.detection.state_machine import SourceUnavailableError
from napsense.scanner import find_heart_rate_monitor

logger = logging.getLogger(__name__)

HR_MEASUREMENT_UUID = "00002a37-0000-1000-8000-00805f9b34fb"

# Resting-HR estimate from live readings when no value is configured
RESTING_ESTIMATE_MIN_READINGS = 30
RESTING_ESTIMATE_PERCENTILE = 10


# ---------------------------------------------------------------------------
# Standard BLE Heart Rate Measurement parser (0x2A37)
# ---------------------------------------------------------------------------
def parse_heart_rate(data: bytearray) -> dict:
    """Parse a standard BLE Heart Rate Measurement value.

    Per Bluetooth SIG spec:
    - Byte 0: Flags
      - Bit 0: HR format (0 = uint8, 1 = uint16)
      - Bit 1-2: Sensor contact status
      - Bit 3: Energy expended present
      - Bit 4: RR-interval present
    - Byte 1(+2): Heart rate value
    - Optional: Energy expended (uint16)
    - Optional: RR-intervals (uint16 each, in 1/1024 sec units)
    """
    flags = data[0]
    hr_format_16bit = bool(flags & 0x01)
    sensor_contact_supported = bool(flags & 0x02)
    sensor_contact_detected = bool(flags & 0x04)
    energy_expended_present = bool(flags & 0x08)
    rr_interval_present = bool(flags & 0x10)

    offset = 1

    if hr_format_16bit:
        hr_value = struct.unpack_from("<H", data, offset)[0]
        offset += 2
    else:
        hr_value = data[offset]
        offset += 1

    energy_expended = None
    if energy_expended_present:
        energy_expended = struct.unpack_from("<H", data, offset)[0]
        offset += 2

    rr_intervals: list[float] = []
    if rr_interval_present:
        while offset + 1 < len(data):
            rr_raw = struct.unpack_from("<H", data, offset)[0]
            # 1/1024 s -> ms
            rr_intervals.append(round(rr_raw / 1024.0 * 1000.0, 1))
            offset += 2

    return {
        "hr_bpm": hr_value,
        "sensor_contact": sensor_contact_detected if sensor_contact_supported else None,
        "energy_expended_kj": energy_expended,
        "rr_intervals_ms": rr_intervals,
    }


def sample_from_measurement(data: bytearray, timestamp: datetime) -> HeartRateSample | None:
    """Turn one notification into a sample; None if unusable.

    Readings with zero bpm or with the sensor reporting lost skin contact
    are dropped.
    """
    try:
        parsed = parse_heart_rate(data)
    except (IndexError, struct.error):
        logger.debug("Malformed heart-rate measurement: %s", bytes(data).hex())
        return None
    if parsed["hr_bpm"] <= 0 or parsed["sensor_contact"] is False:
        return None
    return HeartRateSample(timestamp=timestamp, bpm=float(parsed["hr_bpm"]))


def estimate_resting_heart_rate(readings: list[float]) -> float:
    """Low-percentile estimate of resting HR; 0.0 with too few readings."""
    if len(readings) < RESTING_ESTIMATE_MIN_READINGS:
        return 0.0
    return round(float(np.percentile(readings, RESTING_ESTIMATE_PERCENTILE)), 1)


# ---------------------------------------------------------------------------
# Heart-rate source
# ---------------------------------------------------------------------------


class BleHeartRateSource:
    """Heart-rate source backed by a BLE Heart Rate service."""

    def __init__(
        self,
        address: str | None = None,
        resting_hr: float | None = None,
        scan_timeout: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.address = address
        self.resting_hr = resting_hr
        self.scan_timeout = scan_timeout
        self._clock = clock
        self._client: BleakClient | None = None
        self.readings: list[float] = []

    async def _resolve_address(self) -> str:
        if self.address is not None:
            return self.address
        device = await find_heart_rate_monitor(self.scan_timeout)
        if device is None:
            raise SourceUnavailableError("no heart-rate monitor found")
        self.address = device.address
        return device.address

    async def start(self, callback: Callable[[HeartRateSample], None]) -> None:
        address = await self._resolve_address()
        client = BleakClient(address)

        def _on_notification(_char: BleakGATTCharacteristic, data: bytearray) -> None:
            sample = sample_from_measurement(data, self._clock())
            if sample is None:
                return
            self.readings.append(sample.bpm)
            callback(sample)

        try:
            await client.connect()
            await client.start_notify(HR_MEASUREMENT_UUID, _on_notification)
        except (BleakError, OSError, TimeoutError) as e:
            if client.is_connected:
                await client.disconnect()
            raise SourceUnavailableError(f"cannot stream heart rate from {address}: {e}") from e

        self._client = client
        logger.info("Streaming heart rate from %s", address)

    async def stop(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.stop_notify(HR_MEASUREMENT_UUID)
        except (BleakError, OSError) as e:
            logger.debug("stop_notify failed: %s", e)
        await client.disconnect()

    async def fetch_resting_heart_rate(self) -> float:
        if self.resting_hr:
            return float(self.resting_hr)
        return estimate_resting_heart_rate(self.readings)
