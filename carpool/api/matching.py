"""Matching routes: inspect/stop your live search, stats, and a compatibility check for debugging."""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from carpool.deps import get_current_user_id, services_dep
from carpool.errors import MatchingError
from carpool.schemas.matching import (
    ActiveSearchResponse,
    Coords,
    MatchingStatsResponse,
    StopSearchResponse,
    TestMatchRequest,
    TestMatchResponse,
)
from carpool.services.compatibility import evaluate
from carpool.services.container import Services
from carpool.services.search_registry import SearchKind, build_search

router = APIRouter(prefix="/matching", tags=["matching"])


@router.get("/active-search", response_model=ActiveSearchResponse | None)
async def get_active_search(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(services_dep),
):
    """Return the caller's live search, or null."""
    search = await services.registry.get_search(user_id)
    if search is None:
        return None
    return ActiveSearchResponse(
        id=search.id,
        owner_id=search.owner_id,
        pickup=search.pickup,
        drop=search.drop,
        pickup_coords=Coords(**search.pickup_point.to_dict()),
        drop_coords=Coords(**search.drop_point.to_dict()),
        kind=search.kind.value,
        created_at=search.created_at,
        expires_at=search.expires_at,
        has_pending_match=services.coordinator.has_pending_match(user_id),
    )


@router.delete("/stop-search", response_model=StopSearchResponse)
async def stop_search(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(services_dep),
):
    """Same cleanup as closing the socket: cancel any pending match and drop the search."""
    removed = await services.coordinator.release_user(user_id)
    return StopSearchResponse(removed=removed)


@router.get("/stats", response_model=MatchingStatsResponse)
async def matching_stats(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(services_dep),
):
    searches = await services.registry.list_all()
    return MatchingStatsResponse(
        total_active_searches=len(searches),
        offer_searches=sum(1 for s in searches if s.kind is SearchKind.OFFER),
        request_searches=sum(1 for s in searches if s.kind is SearchKind.REQUEST),
        pending_matches=len(services.coordinator.pending_matches()),
        user_has_active_search=any(s.owner_id == user_id for s in searches),
    )


@router.post("/test-match", response_model=TestMatchResponse)
async def test_match(
    body: TestMatchRequest,
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(services_dep),
):
    """Distances and verdict for two ad-hoc searches, using the live radii. Nothing is stored."""
    now = datetime.now(timezone.utc)
    try:
        first, second = [
            build_search(
                user_id,
                side.pickup_coords.model_dump(),
                side.drop_coords.model_dump(),
                side.kind,
                side.pickup,
                side.drop,
                now,
                0,
            )
            for side in (body.first, body.second)
        ]
    except MatchingError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    report = evaluate(
        first,
        second,
        services.coordinator.pickup_radius_m,
        services.coordinator.drop_radius_m,
    )
    return TestMatchResponse(
        route_first=f"{first.route} ({first.kind.value})",
        route_second=f"{second.route} ({second.kind.value})",
        pickup_distance_m=round(report.pickup_distance_m),
        drop_distance_m=round(report.drop_distance_m),
        opposite_kinds=report.opposite_kinds,
        within_radii=report.within_radii,
        would_match=report.compatible,
    )
