import boto3
import botocore.exceptions
import logging
import time
import re
import random
from collections import OrderedDict
from typing import Callable, FrozenSet, Iterable, List, Tuple

from gatekeeper.core.config import GroupSettings
from gatekeeper.core.errors import CollaboratorFailure
from gatekeeper.models.identity import Caller, Role, UserProfile

logger = logging.getLogger(__name__)


class IdentityStoreError(CollaboratorFailure):
    """Base exception for Identity Store errors."""
    pass


def resolve_role(group_names: Iterable[str], groups: GroupSettings) -> Role:
    """
    Highest-privilege group wins. Anyone authenticated without a gatekeeper
    group is treated as a developer.
    """
    names = set(group_names)
    precedence: List[Tuple[str, Role]] = [
        (groups.approver, Role.APPROVER),
        (groups.auditor, Role.AUDITOR),
        (groups.support, Role.SUPPORT),
        (groups.ops, Role.OPS),
    ]
    for group_name, role in precedence:
        if group_name and group_name in names:
            return role
    return Role.DEV


def application_memberships(group_names: Iterable[str], groups: GroupSettings) -> FrozenSet[str]:
    """Groups named <prefix><APP> make the member an owner of APP's resources."""
    prefix = groups.application_prefix
    return frozenset(name[len(prefix):] for name in group_names if prefix and name.startswith(prefix))


class IdentityStoreAdapter:
    def __init__(self, identity_store_id: str, groups: GroupSettings = None, client=None,
                 cache_max_size: int = 1000, cache_ttl_seconds: int = 300):
        """
        Resolves callers (profile, role, application memberships) from AWS Identity Store.

        Args:
            identity_store_id: AWS Identity Store ID (d-...)
            groups: Group names that map onto gatekeeper roles
            client: Optional identitystore client (injected in tests)
            cache_max_size: Maximum number of callers to cache (default 1000)
            cache_ttl_seconds: Time-to-live for cache entries in seconds (default 300 = 5 minutes)
        """
        if not identity_store_id or not identity_store_id.startswith("d-"):
            raise ValueError("A valid Identity Store ID (d-...) is required.")

        if cache_max_size <= 0:
            raise ValueError(f"cache_max_size must be positive, got {cache_max_size}")

        if cache_ttl_seconds <= 0:
            raise ValueError(f"cache_ttl_seconds must be positive, got {cache_ttl_seconds}")

        self.identity_store_id = identity_store_id
        self.groups = groups or GroupSettings()
        self.client = client or boto3.client('identitystore')

        # LRU cache with bounded size and TTL so group changes are picked up
        self._caller_cache: OrderedDict[str, Tuple[Caller, float]] = OrderedDict()
        self._cache_max_size = cache_max_size
        self._cache_ttl_seconds = cache_ttl_seconds

    def __repr__(self):
        return f"IdentityStoreAdapter(store_id={self.identity_store_id})"

    def _call_with_retry(self, operation: Callable, max_retries: int = 3, **kwargs):
        """Runs an Identity Store call, backing off on ThrottlingException."""
        for attempt in range(1, max_retries + 1):
            try:
                return operation(IdentityStoreId=self.identity_store_id, **kwargs)

            except self.client.exceptions.ResourceNotFoundException:
                raise IdentityStoreError("Identity not found in AWS Identity Center")

            except botocore.exceptions.ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')

                if error_code != 'ThrottlingException':
                    logger.error(f"AWS API error: {error_code}")
                    raise IdentityStoreError(f"AWS Identity Store error: {error_code}")

                if attempt == max_retries:
                    logger.error("Throttled on final attempt")
                    raise IdentityStoreError("AWS throttling exceeded max retries")

                # Exponential backoff with jitter to prevent thundering herd
                backoff = 2 ** (attempt - 1)
                jitter = random.uniform(0, backoff * 0.5)
                sleep_time = backoff + jitter
                logger.warning(
                    f"AWS throttling (ThrottlingException). "
                    f"Waiting {sleep_time:.2f} seconds... (Attempt {attempt}/{max_retries})"
                )
                time.sleep(sleep_time)

        raise IdentityStoreError("Identity Store query exceeded max retries")

    def get_user_id_by_email(self, email: str) -> str:
        if not email or not re.match(r"^[^@]+@[^@]+\.[^@]+$", email):
            raise ValueError(f"Invalid email address format: {email}")

        response = self._call_with_retry(
            self.client.get_user_id,
            AlternateIdentifier={
                'UniqueAttribute': {
                    'AttributePath': 'emails.value',
                    'AttributeValue': email
                }
            }
        )
        return response['UserId']

    def get_user_profile(self, user_id: str) -> UserProfile:
        user = self._call_with_retry(self.client.describe_user, UserId=user_id)
        emails = user.get('Emails') or []
        primary = next((e['Value'] for e in emails if e.get('Primary')), None)
        if primary is None and emails:
            primary = emails[0].get('Value', "")
        return UserProfile(
            user_id=user.get('UserName') or user_id,
            name=user.get('DisplayName') or user.get('UserName', ""),
            email=primary or "",
        )

    def get_user_group_names(self, user_id: str) -> List[str]:
        group_ids: List[str] = []
        next_token = None
        while True:
            kwargs = {"MemberId": {"UserId": user_id}}
            if next_token:
                kwargs["NextToken"] = next_token
            resp = self._call_with_retry(self.client.list_group_memberships_for_member, **kwargs)
            group_ids.extend(m['GroupId'] for m in resp.get('GroupMemberships', []))
            next_token = resp.get('NextToken')
            if not next_token:
                break

        names = []
        for group_id in group_ids:
            group = self._call_with_retry(self.client.describe_group, GroupId=group_id)
            names.append(group.get('DisplayName', group_id))
        return names

    def current_caller(self, email: str) -> Caller:
        """
        Translates a corporate email into the Caller gatekeeper operations run as.
        Cached with LRU eviction and a TTL.
        """
        cached = self._caller_cache.get(email)
        if cached is not None:
            caller, cached_at = cached
            if time.time() - cached_at < self._cache_ttl_seconds:
                self._caller_cache.move_to_end(email)
                return caller
            self._caller_cache.pop(email)

        user_id = self.get_user_id_by_email(email)
        profile = self.get_user_profile(user_id)
        group_names = self.get_user_group_names(user_id)
        caller = Caller(
            profile=profile,
            role=resolve_role(group_names, self.groups),
            memberships=application_memberships(group_names, self.groups),
        )
        # Successfully resolved identity without logging PII
        logger.debug(f"Resolved caller with role {caller.role.value} and {len(caller.memberships)} application(s)")

        if len(self._caller_cache) >= self._cache_max_size:
            evicted = next(iter(self._caller_cache))
            self._caller_cache.pop(evicted)
            logger.debug("Cache full, evicted entry")
        self._caller_cache[email] = (caller, time.time())
        return caller
