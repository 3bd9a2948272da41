"""
Input validation utilities for access request submissions.
Every function raises ValueError with a reason that is safe to show the requester.
"""
import re
from typing import Iterable

from gatekeeper.models.request import TargetResource

# Grants longer than the live-grant lookback would drop out of live views and expiry sweeps
MAX_HOURS = 168

SUPPORTED_PLATFORMS = ("Linux", "Windows")


def validate_hours(hours, max_hours: int = MAX_HOURS) -> int:
    """
    Validates requested access duration.

    Args:
        hours: Requested duration in whole hours
        max_hours: Longest grant allowed

    Returns:
        Validated duration

    Raises:
        ValueError: If hours is not a positive integer within the maximum
    """
    if isinstance(hours, bool) or not isinstance(hours, int):
        raise ValueError(f"Hours must be a whole number, got: {hours!r}")

    if hours <= 0:
        raise ValueError(f"Hours must be positive, got: {hours}")

    if hours > max_hours:
        raise ValueError(f"Hours exceed maximum of {max_hours} hours, got: {hours}")

    return hours


def validate_account_alias(account: str) -> str:
    """Account aliases are short names (qa1, prod-east); returned upper-cased."""
    if not account:
        raise ValueError("Account cannot be empty")

    if not re.match(r'^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$', account):
        raise ValueError(f"Invalid account alias format: {account}")

    return account.upper()


def validate_region(region: str) -> str:
    if not region or not re.match(r'^[a-z]{2}(-gov)?-[a-z]+-\d$', region):
        raise ValueError(f"Invalid AWS region: {region}")
    return region


def validate_platform(platform: str) -> str:
    if platform not in SUPPORTED_PLATFORMS:
        raise ValueError(f"Unsupported platform '{platform}'. Expected one of: {', '.join(SUPPORTED_PLATFORMS)}")
    return platform


def validate_resource_platforms(platform: str, resources: Iterable[TargetResource]) -> None:
    """
    Every resource must share the request's platform.
    Raises on the first mismatch, naming the instance and both platforms.
    """
    resources = list(resources)
    if not resources:
        raise ValueError("At least one resource must be requested")

    for resource in resources:
        if resource.platform != platform:
            raise ValueError(
                f"Instance platform doesn't match requested platform. Instance: {resource.resource_id} "
                f"({resource.platform}) Requested: {platform}"
            )
