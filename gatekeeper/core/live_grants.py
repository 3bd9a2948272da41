import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from gatekeeper.adapters.state_store import RequestStore
from gatekeeper.models.live_access import (
    AccessEntry,
    EventType,
    LiveGrant,
    PlatformAccess,
    RequestEvent,
    UserAccessView,
)
from gatekeeper.models.request import AccessRequest, RequestUser, TargetResource, utc_now

logger = logging.getLogger(__name__)


def is_live(request: AccessRequest, authorization_start: datetime, now: datetime) -> bool:
    """
    A grant is live strictly before authorization_start + hours.
    Hours are wall-clock hours; the exact end instant already counts as expired.
    """
    return now < authorization_start + timedelta(hours=request.hours)


def add_request_data(access: PlatformAccess, request_id: int, resource: TargetResource) -> None:
    entry = AccessEntry(request_id=str(request_id), name=resource.name, ip=resource.ip)
    platform = (resource.platform or "").lower()
    if platform == "linux":
        access.linux.append(entry)
    elif platform == "windows":
        access.windows.append(entry)
    else:
        logger.debug(f"Resource {resource.resource_id} on platform '{resource.platform}' is not reported")


class LiveGrantTracker:
    """
    Derives which granted requests are still live from (request, authorization_start)
    pairs recorded by the lifecycle engine. Read-only over the request store.
    """
    def __init__(self, store: RequestStore, lookback_hours: int = 168,
                 user_id_prefix: str = "gk-", clock=utc_now):
        self.store = store
        self.lookback = timedelta(hours=lookback_hours)
        self.user_id_prefix = user_id_prefix
        self._clock = clock

    def compute_live_grants(self, now: datetime, lookback: Optional[timedelta] = None) -> List[LiveGrant]:
        """Granted requests whose authorization started within [now - lookback, now]."""
        window_start = now - (lookback if lookback is not None else self.lookback)
        grants = []
        for request in self.store.list_granted_since(window_start):
            start = request.authorization_start
            # No recorded authorization start means no audit trail: excluded
            if start is None or start > now:
                continue
            grants.append(LiveGrant(request=request, authorization_start=start))
        return grants

    def live_requests(self, now: Optional[datetime] = None,
                      lookback: Optional[timedelta] = None) -> List[AccessRequest]:
        now = now or self._clock()
        live = []
        for grant in self.compute_live_grants(now, lookback):
            alive = is_live(grant.request, grant.authorization_start, now)
            logger.debug(f"Request {grant.request.id} is live: {alive}")
            if alive:
                live.append(grant.request)
        return live

    def normalize_user_id(self, user_id: str) -> str:
        if self.user_id_prefix and user_id.startswith(self.user_id_prefix):
            return user_id[len(self.user_id_prefix):]
        return user_id

    def build_user_view(self, live_requests: Iterable[AccessRequest],
                        target_users: Iterable[RequestUser]) -> List[UserAccessView]:
        live_requests = list(live_requests)
        views: Dict[str, UserAccessView] = {}

        for user in target_users:
            user_id = self.normalize_user_id(user.user_id)
            view = UserAccessView(user_id=user_id, gk_user_id=user.user_id, email=user.email)

            for live_request in live_requests:
                if any(u.user_id == user.user_id for u in live_request.users):
                    logger.debug(f"{user.user_id} is part of request {live_request.id}, adding its resources")
                    for resource in live_request.resources:
                        add_request_data(view.active_access, live_request.id, resource)

            views[user_id] = view

        return list(views.values())

    @staticmethod
    def add_expired(views: List[UserAccessView], expired_request: AccessRequest) -> List[UserAccessView]:
        for view in views:
            for resource in expired_request.resources:
                add_request_data(view.expired_access, expired_request.id, resource)
        return views

    def for_event(self, event_type: EventType, request: AccessRequest,
                  now: Optional[datetime] = None) -> RequestEvent:
        """
        All live (and, on expiration, recently expired) access for every user in request.
        APPROVAL: the freshly granted request is unioned into the live set.
        EXPIRATION: the expiring request is removed from the live set and reported as expired.
        """
        now = now or self._clock()
        logger.info(f"Compiling live requests for {event_type.value} of request {request.id}")

        live = [r for r in self.live_requests(now) if r.id != request.id]
        logger.info(f"There are {len(live)} other requests that are live")

        if event_type is EventType.APPROVAL:
            live.append(request)

        views = self.build_user_view(live, request.users)

        if event_type is EventType.EXPIRATION:
            views = self.add_expired(views, request)

        return RequestEvent(request_id=request.id, event_type=event_type, users=views)
