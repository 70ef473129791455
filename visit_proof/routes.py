"""Route definitions: JSON codec, relay envelopes and checkpoint auto-placement."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from visit_proof.errors import ValidationError
from visit_proof.events import Envelope, EventKind, make_envelope
from visit_proof.geo import polyline_length_m
from visit_proof.models import Checkpoint, Coordinate, ProofMethod, QuestionSpec, Route
from visit_proof.proofs import create_deterministic_id
from visit_proof.sampling import SamplingOptions, sample_points_along_polylines

logger = logging.getLogger(__name__)

ROUTE_SCHEMA = "visit_proof.route.v1"
_SHORT_ID = 16


def checkpoint_to_dict(cp: Checkpoint) -> dict[str, Any]:
    actions: list[dict[str, Any]] = []
    for method in sorted(cp.required_methods, key=lambda m: m.value):
        action: dict[str, Any] = {"type": method.value}
        if method is ProofMethod.NFC:
            action["tag_id"] = cp.nfc_tag_id
        elif method is ProofMethod.QUESTION and cp.question is not None:
            action["prompt"] = cp.question.prompt
            action["choices"] = list(cp.question.choices)
            action["answer_hash"] = cp.question.answer_hash
        actions.append(action)
    return {
        "cid": cp.id,
        "lat": cp.center.lat,
        "lng": cp.center.lng,
        "radius_m": cp.radius_m,
        "name": cp.name,
        "description": cp.description,
        "actions": actions,
    }


def checkpoint_from_dict(data: Mapping[str, Any]) -> Checkpoint:
    methods: set[ProofMethod] = set()
    nfc_tag_id = None
    question = None
    for action in data.get("actions") or [{"type": "geofence"}]:
        method = ProofMethod(action["type"])
        methods.add(method)
        if method is ProofMethod.NFC:
            nfc_tag_id = action.get("tag_id")
        elif method is ProofMethod.QUESTION:
            question = QuestionSpec(
                prompt=str(action.get("prompt", "")),
                answer_hash=str(action["answer_hash"]),
                choices=tuple(action.get("choices") or ()),
            )
    return Checkpoint(
        id=str(data["cid"]),
        center=Coordinate(lat=float(data["lat"]), lng=float(data["lng"])),
        radius_m=float(data["radius_m"]),
        required_methods=frozenset(methods),
        nfc_tag_id=nfc_tag_id,
        question=question,
        name=data.get("name"),
        description=data.get("description"),
    )


def route_to_dict(route: Route) -> dict[str, Any]:
    """Serialize a route. The polyline is a GeoJSON LineString ([lng, lat] order)."""

    return {
        "schema": ROUTE_SCHEMA,
        "id": route.id,
        "name": route.name,
        "mode": route.mode,
        "polyline_geojson": {
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": [[p.lng, p.lat] for p in route.polyline]},
        },
        "distance_m": route.distance_m,
        "elevation_gain_m": route.elevation_gain_m,
        "created_by": route.created_by,
        "checkpoints": [checkpoint_to_dict(cp) for cp in route.checkpoints],
        "version": 1,
    }


def route_from_dict(data: Mapping[str, Any]) -> Route:
    """Parse a route dict.

    Raises:
        ValidationError: If required fields are missing or malformed.
    """

    try:
        coords = data["polyline_geojson"]["geometry"]["coordinates"]
        polyline = tuple(Coordinate(lat=float(c[1]), lng=float(c[0])) for c in coords)
        checkpoints = tuple(checkpoint_from_dict(cp) for cp in data.get("checkpoints") or ())
        distance = data.get("distance_m")
        return Route(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            polyline=polyline,
            checkpoints=checkpoints,
            distance_m=float(distance) if distance is not None else polyline_length_m(polyline),
            elevation_gain_m=None if data.get("elevation_gain_m") is None else float(data["elevation_gain_m"]),
            mode=data.get("mode"),
            created_by=data.get("created_by"),
        )
    except (KeyError, TypeError, ValueError, IndexError) as exc:
        raise ValidationError(f"路线格式错误：{exc}") from exc


def load_route(path: str | Path) -> Route:
    p = Path(path)
    return route_from_dict(json.loads(p.read_text(encoding="utf-8")))


def save_route(route: Route, path: str | Path) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(route_to_dict(route), ensure_ascii=False, indent=2), encoding="utf-8")


def route_to_envelope(route: Route, author: str, created_at_ms: int) -> Envelope:
    tags = [("d", f"route:{route.id}"), ("t", "visit_proof")]
    if route.name:
        tags.append(("title", route.name))
    return make_envelope(EventKind.ROUTE, author, created_at_ms, tags, route_to_dict(route))


def route_from_envelope(env: Envelope) -> Route:
    if env.kind != EventKind.ROUTE:
        raise ValidationError(f"envelope {env.id}: kind {env.kind} is not a route")
    return route_from_dict(env.content_json())


def place_checkpoints(
    route: Route,
    options: SamplingOptions,
    radius_m: float = 30.0,
    methods: Iterable[ProofMethod] = (ProofMethod.GEOFENCE,),
) -> Route:
    """Auto-place checkpoint candidates on the route's polyline.

    Checkpoint ids are derived from the route id, position index and location,
    so the same seed reproduces the same ids. The result is a new route version
    with its own id. NFC checkpoints get the checkpoint id as tag id.
    """

    method_set = frozenset(methods) | {ProofMethod.GEOFENCE}
    if ProofMethod.QUESTION in method_set:
        raise ValueError("question checkpoints cannot be auto-placed")

    points = sample_points_along_polylines([route.polyline], options)
    checkpoints = []
    for i, p in enumerate(points):
        cp_id = create_deterministic_id(route.id, str(i), f"{p.lat:.6f}", f"{p.lng:.6f}")[:_SHORT_ID]
        checkpoints.append(
            Checkpoint(
                id=cp_id,
                center=p,
                radius_m=radius_m,
                required_methods=method_set,
                nfc_tag_id=cp_id if ProofMethod.NFC in method_set else None,
                name=f"CP{i + 1}",
            )
        )
    new_id = create_deterministic_id(route.id, *(cp.id for cp in checkpoints))[:_SHORT_ID]
    logger.info("Placed %s/%s checkpoints on route %s -> %s", len(checkpoints), options.count, route.id, new_id)
    return route.with_checkpoints(new_id, checkpoints)
