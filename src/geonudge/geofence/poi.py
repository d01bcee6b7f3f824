"""POI 查询接口

真实的地图/POI 服务属于外部协作者；这里只约定接口，并提供一个基于静态列表的实现
（部署时可替换为调用地图服务的实现）。
"""

from typing import Iterable, Protocol

from geonudge.datamodel import POI, Coordinate, POICategory
from geonudge.utils import haversine_m

POI_DISPLAY_NAMES = {
    POICategory.GAS: "gas station",
    POICategory.PHARMACY: "pharmacy",
    POICategory.GROCERY: "grocery store",
    POICategory.BANK: "bank",
    POICategory.POST_OFFICE: "post office",
}

DEFAULT_SEARCH_RADIUS_M = 16093.0  # 10 miles
DEFAULT_MAX_POIS = 3


class POIProvider(Protocol):
    async def find_nearby(
        self,
        category: POICategory,
        location: Coordinate,
        radius_m: float = DEFAULT_SEARCH_RADIUS_M,
        limit: int = DEFAULT_MAX_POIS,
    ) -> list[POI]: ...


class StaticPOIProvider:
    """从固定 POI 列表中按类别与距离筛选，按距离升序返回"""

    def __init__(self, pois: Iterable[POI] = ()) -> None:
        self._pois = list(pois)

    def add(self, poi: POI) -> None:
        self._pois.append(poi)

    async def find_nearby(
        self,
        category: POICategory,
        location: Coordinate,
        radius_m: float = DEFAULT_SEARCH_RADIUS_M,
        limit: int = DEFAULT_MAX_POIS,
    ) -> list[POI]:
        candidates = []
        for poi in self._pois:
            if poi.category != category:
                continue
            distance = haversine_m(location, poi.coordinate)
            if distance <= radius_m:
                candidates.append((distance, poi.poi_id, poi))
        candidates.sort(key=lambda item: (item[0], item[1]))
        return [poi for _, _, poi in candidates[:limit]]


def display_name(category: POICategory) -> str:
    return POI_DISPLAY_NAMES.get(POICategory(category), str(category))


__all__ = ["POIProvider", "StaticPOIProvider", "POI_DISPLAY_NAMES", "display_name",
           "DEFAULT_SEARCH_RADIUS_M", "DEFAULT_MAX_POIS"]
