"""Hardware descriptor building: local devices into a catalog request document."""

from __future__ import annotations

import dataclasses
import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from driverstage.core.errors import DeviceEnumerationError
from driverstage.core.model import Device, HardwareRequest, RunOptions
from driverstage.transports.base import DeviceEnumerator

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnumerationOutcome:
    devices: tuple[Device, ...]
    reduced: bool
    warnings: tuple[str, ...] = ()


def build_request(
    devices: Iterable[Device],
    categories: Sequence[str] = (),
    *,
    wildcard: bool = False,
    require_present: bool = False,
) -> HardwareRequest:
    """Build the request document for the catalog.

    Devices without a resolvable hardware identifier are omitted, and an
    identifier shared by several devices is only sent once.
    """
    seen: set[str] = set()
    hardware_ids: list[str] = []
    for device in devices:
        if require_present and not device.present:
            continue
        hardware_id = device.hardware_id
        if hardware_id is None:
            LOGGER.debug("Skipping device without hardware id: %s", device.name)
            continue
        key = hardware_id.upper()
        if key in seen:
            continue
        seen.add(key)
        hardware_ids.append(hardware_id)

    return HardwareRequest(
        categories=tuple(c for c in categories if c and c.strip()),
        wildcard=wildcard,
        hardware_ids=tuple(hardware_ids),
    )


def render_request_xml(request: HardwareRequest) -> str:
    root = ET.Element("DriverCatalogRequest")
    if request.categories:
        categories = ET.SubElement(root, "Categories")
        if request.wildcard:
            categories.set("Wildcard", "true")
        for category in request.categories:
            ET.SubElement(categories, "Category").text = category
    devices = ET.SubElement(root, "Devices")
    for hardware_id in request.hardware_ids:
        ET.SubElement(devices, "Device", {"HardwareId": hardware_id})
    return ET.tostring(root, encoding="unicode", short_empty_elements=False)


def enumerate_devices(primary: DeviceEnumerator, fallback: DeviceEnumerator) -> EnumerationOutcome:
    try:
        return EnumerationOutcome(devices=tuple(primary.list_devices()), reduced=False)
    except DeviceEnumerationError as exc:
        warning = f"Primary device enumeration failed, using fallback without presence or version data: {exc}"
        LOGGER.warning(warning)

    devices = tuple(fallback.list_devices())
    return EnumerationOutcome(devices=devices, reduced=True, warnings=(warning,))


def degrade_for_fallback(options: RunOptions) -> tuple[RunOptions, tuple[str, ...]]:
    """Turn off the policies the fallback enumerator cannot support."""
    warnings: list[str] = []
    if options.hardware_must_be_present:
        warnings.append("HardwareMustBePresent disabled: fallback enumeration has no presence data")
    if options.update_only_dated_drivers:
        warnings.append("UpdateOnlyDatedDrivers disabled: fallback enumeration has no version data")
    for warning in warnings:
        LOGGER.warning(warning)
    degraded = dataclasses.replace(
        options,
        hardware_must_be_present=False,
        update_only_dated_drivers=False,
    )
    return degraded, tuple(warnings)
