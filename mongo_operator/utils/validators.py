"""Input validation utilities."""

import re
from typing import Pattern

from croniter import croniter


# Kubernetes resource name pattern (RFC 1123 DNS label)
K8S_NAME_PATTERN: Pattern[str] = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

# Storage size pattern (e.g., "8Gi", "100Mi", "1Ti")
STORAGE_SIZE_PATTERN: Pattern[str] = re.compile(r"^\d+(\.\d+)?(Ki|Mi|Gi|Ti|Pi|Ei)$")

# Member workloads are named "<cluster>-<replset>-<index>" and their pods get
# a "-0" suffix, so the combined name must stay a valid DNS label.
MAX_LABEL_LENGTH = 63


def validate_resource_name(name: str) -> bool:
    """
    Validate Kubernetes resource name.

    Args:
        name: Resource name to validate

    Returns:
        True if valid, False otherwise
    """
    if not name or len(name) > 253:
        return False
    return K8S_NAME_PATTERN.match(name) is not None


def validate_member_name(cluster: str, replset: str, max_index: int) -> bool:
    """Check that every member pod name of a replica set is a DNS label."""
    longest = f"{cluster}-{replset}-{max_index}-0"
    return len(longest) <= MAX_LABEL_LENGTH and validate_resource_name(longest)


def validate_storage_size(size: str) -> bool:
    """
    Validate Kubernetes storage size specification.

    Args:
        size: Storage size string (e.g., "8Gi")

    Returns:
        True if valid, False otherwise
    """
    if not size:
        return False
    return STORAGE_SIZE_PATTERN.match(size) is not None


def validate_cron_schedule(schedule: str) -> bool:
    """Validate a five-field cron expression."""
    if not schedule or len(schedule.split()) != 5:
        return False
    return croniter.is_valid(schedule)
