"""Offline map packages for the Angolan provinces."""
from __future__ import annotations

import logging
import unicodedata
from typing import Any

from .errors import NotFound
from .models import OfflineMapPackage, now_ms
from .network import NetworkStatusTracker

logger = logging.getLogger("fieldops.maps")

DEFAULT_BANDWIDTH_MBPS = 1.0

# province -> package size (MB)
ANGOLA_PROVINCES: dict[str, int] = {
    "Luanda": 540,
    "Bengo": 180,
    "Benguela": 420,
    "Bié": 260,
    "Cabinda": 150,
    "Cuando Cubango": 310,
    "Cuanza Norte": 190,
    "Cuanza Sul": 330,
    "Cunene": 220,
    "Huambo": 350,
    "Huíla": 380,
    "Lunda Norte": 240,
    "Lunda Sul": 200,
    "Malanje": 290,
    "Moxico": 340,
    "Namibe": 170,
    "Uíge": 270,
    "Zaire": 160,
}


def slugify(name: str) -> str:
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    return "-".join(ascii_name.lower().split())


class OfflineMapCatalog:
    def __init__(self, network: NetworkStatusTracker, base_url: str, version: str) -> None:
        self._network = network
        published = now_ms()
        self._packages: dict[str, OfflineMapPackage] = {}
        for province, size_mb in ANGOLA_PROVINCES.items():
            slug = slugify(province)
            self._packages[slug] = OfflineMapPackage(
                id=slug,
                region="Angola",
                province=province,
                package_size_mb=size_mb,
                last_updated=published,
                download_url=f"{base_url.rstrip('/')}/{slug}.zip",
                version=version,
            )
        logger.info("%d offline map packages available", len(self._packages))

    def __len__(self) -> int:
        return len(self._packages)

    def list(self, region: str | None = None, province: str | None = None) -> list[OfflineMapPackage]:
        maps = list(self._packages.values())
        if region:
            maps = [m for m in maps if region.lower() in m.region.lower()]
        if province:
            maps = [m for m in maps if province.lower() in m.province.lower()]
        return sorted(maps, key=lambda m: m.last_updated, reverse=True)

    def initiate_download(self, map_id: str, device_id: str) -> dict[str, Any]:
        package = self._packages.get(map_id)
        if package is None:
            raise NotFound(f"Map package not found: {map_id}")
        status = self._network.peek(device_id)
        bandwidth = status.bandwidth_mbps if status and status.bandwidth_mbps > 0 else DEFAULT_BANDWIDTH_MBPS
        estimated_ms = package.package_size_mb * 8 / bandwidth * 1000
        logger.info("Map download for %s on %s: %dMB at %.1fMbps, ~%.0fs",
                    package.province, device_id, package.package_size_mb, bandwidth, estimated_ms / 1000)
        return {
            "mapId": package.id,
            "downloadUrl": package.download_url,
            "packageSize": package.package_size_mb,
            "estimatedDownloadTime": estimated_ms,
        }
