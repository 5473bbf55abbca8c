"""Scan for BLE heart-rate monitors."""

import asyncio

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

HR_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"


def is_heart_rate_monitor(adv: AdvertisementData) -> bool:
    """True if the advertisement lists the standard Heart Rate service."""
    return any(u.lower() == HR_SERVICE_UUID for u in adv.service_uuids or [])


async def scan(timeout: float = 10.0) -> list[tuple[BLEDevice, AdvertisementData]]:
    """Scan for nearby devices advertising the Heart Rate service.

    Returns a list of (device, advertisement_data) tuples.
    """
    results: list[tuple[BLEDevice, AdvertisementData]] = []

    def _callback(device: BLEDevice, adv: AdvertisementData) -> None:
        if not is_heart_rate_monitor(adv):
            return
        # Avoid duplicates
        if any(d.address == device.address for d, _ in results):
            return
        results.append((device, adv))
        name = adv.local_name or device.name or "?"
        print(f"  Found: {name} [{device.address}] RSSI={adv.rssi} dBm")

    scanner = BleakScanner(detection_callback=_callback)
    print(f"Scanning for heart-rate monitors ({timeout}s)...")
    await scanner.start()
    await asyncio.sleep(timeout)
    await scanner.stop()

    if not results:
        print("No heart-rate monitors found.")
    else:
        print(f"\n{len(results)} heart-rate monitor(s) found.")

    return results


async def find_heart_rate_monitor(timeout: float = 10.0) -> BLEDevice | None:
    """Find the first heart-rate monitor and return it."""
    results = await scan(timeout)
    if results:
        return results[0][0]
    return None


def main() -> None:
    asyncio.run(scan())


if __name__ == "__main__":
    main()
