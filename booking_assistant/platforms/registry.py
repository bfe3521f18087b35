"""Lookup of the adapter that drives each platform."""

from __future__ import annotations

from booking_assistant.models import Platform
from booking_assistant.platforms.base import PlatformAdapter
from booking_assistant.platforms.calendly import CalendlyAdapter
from booking_assistant.platforms.housecallpro import HousecallProAdapter
from booking_assistant.platforms.opentable import OpenTableAdapter


def default_adapters() -> dict[Platform, PlatformAdapter]:
    adapters: list[PlatformAdapter] = [CalendlyAdapter(), OpenTableAdapter(), HousecallProAdapter()]
    return {adapter.platform: adapter for adapter in adapters}
