"""Flood indicators from the Copernicus EFAS WMS.

The WMS is negotiated rather than assumed: capabilities are fetched, a
queryable layer is selected, and GetFeatureInfo is attempted with several
version / axis-order / info_format combinations until one returns a usable
non-exception body. When none does, a reverse-geocode based description of
the area is returned instead and the result is flagged ``fallback_used``.
"""

import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, Iterator, List, Tuple

import httpx

from ..models import AdapterResult
from ..services.http import FetchGateway, FetchTimeoutError
from ..settings import get_settings
from .base import absorb_errors
from .geo import bbox_around
from .reverse_geocode import reverse_geocode

logger = logging.getLogger(__name__)

SOURCE = "copernicus_efas_wms"
FLOOD_LAYER_PATTERN = re.compile(r"flood|inund|risk|rp", re.IGNORECASE)
MIN_FEATURE_INFO_LENGTH = 50
DEFAULT_INFO_FORMATS = (
    "application/vnd.ogc.gml",
    "text/xml",
    "application/json",
    "text/plain",
    "text/html",
)
# (version, axis order of the EPSG:4326 bbox)
PROTOCOL_VARIANTS = (
    ("1.3.0", "lat_lon"),
    ("1.3.0", "lon_lat"),
    ("1.1.1", "lon_lat"),
)
GRID_SIZE = 101


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(el: ET.Element, name: str) -> str | None:
    for child in el:
        if _local(child.tag) == name:
            return (child.text or "").strip() or None
    return None


def parse_capabilities(xml_text: str) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Layers (name, title, queryable) and advertised GetFeatureInfo formats."""
    root = ET.fromstring(xml_text)
    layers: List[Dict[str, Any]] = []
    formats: List[str] = []
    for el in root.iter():
        tag = _local(el.tag)
        if tag == "Layer":
            name = _child_text(el, "Name")
            title = _child_text(el, "Title")
            if name or title:
                layers.append(
                    {
                        "name": name,
                        "title": title,
                        "queryable": str(el.get("queryable", "0")) == "1",
                    }
                )
        elif tag == "GetFeatureInfo":
            formats.extend(
                (child.text or "").strip() for child in el if _local(child.tag) == "Format" and child.text
            )
    return layers, formats


def pick_layer(layers: List[Dict[str, Any]]) -> Dict[str, Any] | None:
    queryable = [l for l in layers if l["name"] and l["queryable"]]
    for layer in queryable:
        if FLOOD_LAYER_PATTERN.search(layer["name"]):
            return layer
    if queryable:
        return queryable[0]
    return next((l for l in layers if l["name"]), None)


def _base_endpoint(capabilities_url: str) -> Tuple[str, Dict[str, str]]:
    url = httpx.URL(capabilities_url)
    keep = {
        k: v for k, v in url.params.items() if k.lower() not in ("request", "service", "version")
    }
    return str(url.copy_with(query=None)), keep


def feature_info_requests(
    capabilities_url: str,
    layer_name: str,
    lat: float,
    lon: float,
    formats: List[str],
) -> Iterator[Tuple[str, Dict[str, str]]]:
    """Every GetFeatureInfo variant worth trying, most likely first."""
    base, extra = _base_endpoint(capabilities_url)
    bb = bbox_around(lat, lon, 0.02)
    center = str(GRID_SIZE // 2)
    preferred = [f for f in DEFAULT_INFO_FORMATS if not formats or f in formats]
    for version, axis in PROTOCOL_VARIANTS:
        if axis == "lat_lon":
            bbox = f"{bb['min_lat']},{bb['min_lon']},{bb['max_lat']},{bb['max_lon']}"
        else:
            bbox = f"{bb['min_lon']},{bb['min_lat']},{bb['max_lon']},{bb['max_lat']}"
        for info_format in preferred or list(DEFAULT_INFO_FORMATS):
            params = {
                **extra,
                "service": "WMS",
                "version": version,
                "request": "GetFeatureInfo",
                "layers": layer_name,
                "query_layers": layer_name,
                "styles": "",
                "bbox": bbox,
                "width": str(GRID_SIZE),
                "height": str(GRID_SIZE),
                "info_format": info_format,
                "feature_count": "1",
            }
            if version == "1.3.0":
                params.update({"crs": "EPSG:4326", "i": center, "j": center})
            else:
                params.update({"srs": "EPSG:4326", "x": center, "y": center})
            yield base, params


def is_usable_feature_info(status_code: int, text: str | None) -> bool:
    if status_code >= 400 or not text:
        return False
    body = text.strip()
    if len(body) < MIN_FEATURE_INFO_LENGTH:
        return False
    return "ServiceException" not in body and "ExceptionReport" not in body


async def _fallback(gateway: FetchGateway, lat: float, lon: float, reason: str, **extra: Any) -> AdapterResult:
    logger.info("EFAS WMS unusable at %s,%s (%s); using reverse-geocode fallback", lat, lon, reason)
    reverse = await reverse_geocode(gateway, lat, lon, 10)
    if not reverse.ok:
        return AdapterResult.failure(
            SOURCE,
            f"EFAS WMS unavailable ({reason}) and fallback failed ({reverse.error})",
            method="copernicus_efas_wms",
            reason=reason,
            **extra,
        )
    return AdapterResult.degraded(
        SOURCE,
        method="reverse_geocode_fallback",
        reason=reason,
        note=(
            "EFAS WMS returned no interpretable answer for this point. "
            "Only the administrative context of the area is available."
        ),
        fallback={
            "display_name": reverse.get("display_name"),
            "address": reverse.get("address"),
        },
        feature_info=None,
        **extra,
    )


@absorb_errors(SOURCE)
async def flood_risk(gateway: FetchGateway, lat: float, lon: float) -> AdapterResult:
    """Flood indicators for a point from Copernicus EFAS (WMS GetFeatureInfo)."""
    capabilities_url = get_settings().copernicus_efas_wms_url

    try:
        cap_res = await gateway.get(capabilities_url, timeout_ms=15000, headers={"Accept": "application/xml,text/xml"})
    except (FetchTimeoutError, httpx.RequestError) as e:
        return await _fallback(gateway, lat, lon, f"GetCapabilities failed: {e}")
    if cap_res.status_code >= 400:
        return await _fallback(gateway, lat, lon, f"GetCapabilities HTTP {cap_res.status_code}")

    try:
        layers, formats = parse_capabilities(cap_res.text)
    except ET.ParseError as e:
        return await _fallback(gateway, lat, lon, f"Unparseable capabilities: {e}")

    layer = pick_layer(layers)
    if layer is None:
        return await _fallback(
            gateway, lat, lon, "No usable layer in capabilities", layers_seen=layers[:30]
        )

    attempts: List[Dict[str, Any]] = []
    for base, params in feature_info_requests(capabilities_url, layer["name"], lat, lon, formats):
        try:
            res = await gateway.get(base, params=params, timeout_ms=15000, headers={"Accept": "*/*"})
        except (FetchTimeoutError, httpx.RequestError) as e:
            attempts.append({"version": params["version"], "info_format": params["info_format"], "error": str(e)})
            continue
        attempts.append(
            {"version": params["version"], "info_format": params["info_format"], "status": res.status_code}
        )
        if is_usable_feature_info(res.status_code, res.text):
            return AdapterResult.success(
                SOURCE,
                method="copernicus_efas_wms",
                layer={"name": layer["name"], "title": layer["title"]},
                getfeatureinfo_url=str(httpx.URL(base, params=params)),
                info_format=params["info_format"],
                feature_info=res.text.strip(),
                note="Answer returned by EFAS WMS (GML/text).",
                layers_sample=layers[:20],
            )

    return await _fallback(
        gateway,
        lat,
        lon,
        "GetFeatureInfo empty or exception for every variant",
        layer={"name": layer["name"], "title": layer["title"]},
        attempts=attempts,
    )
