from __future__ import annotations

from diarist.adapters import ServiceAdapter
from diarist.bilibili import BilibiliAdapter
from diarist.league_of_legends import LeagueOfLegendsAdapter
from diarist.models import AppConfig, ServiceId
from diarist.netflix import NetflixAdapter
from diarist.wakatime import WakatimeAdapter
from diarist.youtube import YoutubeAdapter

ADAPTER_CLASSES: dict[ServiceId, type[ServiceAdapter]] = {
    ServiceId.BILIBILI: BilibiliAdapter,
    ServiceId.LEAGUE_OF_LEGENDS: LeagueOfLegendsAdapter,
    ServiceId.NETFLIX: NetflixAdapter,
    ServiceId.WAKATIME: WakatimeAdapter,
    ServiceId.YOUTUBE: YoutubeAdapter,
}


def build_adapters(config: AppConfig) -> dict[ServiceId, ServiceAdapter]:
    """One adapter per enabled service."""
    return {
        service_id: ADAPTER_CLASSES[service_id](
            config.service(service_id),
            timeout_seconds=config.sync.http_timeout_seconds,
        )
        for service_id in config.enabled_services()
    }
