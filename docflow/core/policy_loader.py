"""Policy loading, validation and persistence.

Loaded policies are cached per user in an explicit ``PolicyCache`` owned by
the orchestrator. Every write goes through this module so the cache can be
invalidated.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from docflow.core.config import get_settings
from docflow.core.errors import NotFoundError, PolicyValidationError
from docflow.core.logging import get_logger
from docflow.core.schemas_policies import Policy, sort_by_priority
from docflow.db.policies import (
    delete_policy_row,
    get_policy_row,
    list_policy_rows,
    update_policy_row,
    upsert_policy_row,
)

logger = get_logger(__name__)

PATCHABLE_METADATA = ("name", "description", "tags", "priority")


def validate_policy(raw: Any) -> Policy:
    """
    Validate a policy document.

    Raises:
        PolicyValidationError: With one problem per failing check
    """
    if not isinstance(raw, dict):
        raise PolicyValidationError("Policy must be a JSON object")

    problems: list[str] = []
    if raw.get("apiVersion", raw.get("api_version")) != "folio/v1":
        problems.append("apiVersion must be 'folio/v1'")

    metadata = raw.get("metadata")
    if not isinstance(metadata, dict):
        problems.append("metadata is required")
    else:
        if not isinstance(metadata.get("id"), str) or not metadata["id"].strip():
            problems.append("metadata.id must be a non-empty string")
        priority = metadata.get("priority")
        if isinstance(priority, bool) or not isinstance(priority, (int, float)):
            problems.append("metadata.priority must be a number")

    spec = raw.get("spec")
    match = spec.get("match") if isinstance(spec, dict) else None
    if not isinstance(match, dict):
        problems.append("spec.match is required")
    else:
        if not isinstance(match.get("strategy"), str):
            problems.append("spec.match.strategy must be a string")
        if not isinstance(match.get("conditions"), list):
            problems.append("spec.match.conditions must be a list")

    if problems:
        raise PolicyValidationError("Invalid policy: " + "; ".join(problems), problems=problems)

    try:
        return Policy.model_validate(raw)
    except ValidationError as e:
        details = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise PolicyValidationError("Invalid policy: " + "; ".join(details), problems=details) from e


def policy_from_row(row: dict[str, Any]) -> Policy:
    """Row columns (policy_id, priority, enabled) override the stored metadata."""
    metadata = dict(row.get("metadata") or {})
    metadata["id"] = row["policy_id"]
    if row.get("priority") is not None:
        metadata["priority"] = row["priority"]
    if row.get("enabled") is not None:
        metadata["enabled"] = row["enabled"]
    return Policy.model_validate(
        {
            "apiVersion": row.get("api_version") or "folio/v1",
            "kind": row.get("kind") or "Policy",
            "metadata": metadata,
            "spec": row.get("spec") or {},
        }
    )


def _rows_to_policies(rows: list[dict[str, Any]], user_id: str) -> list[Policy]:
    policies = []
    for row in rows:
        try:
            policies.append(policy_from_row(row))
        except (ValidationError, KeyError) as e:
            logger.warning(
                f"Skipping malformed policy row {row.get('policy_id')}: {e}", extra={"user_id": user_id}
            )
    return policies


@dataclass
class _CacheEntry:
    policies: list[Policy]
    loaded_at: float


class PolicyCache:
    """Per-user cache of enabled policies, expiring after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else get_settings().POLICY_CACHE_TTL_SECONDS
        )
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def load(self, user_id: str, force_refresh: bool = False) -> list[Policy]:
        """Enabled policies in ascending priority. Returns [] if the store fails."""
        now = self._clock()
        entry = self._entries.get(user_id)
        if not force_refresh and entry and now - entry.loaded_at < self.ttl_seconds:
            return entry.policies

        try:
            rows = list_policy_rows(user_id, enabled_only=True)
        except Exception as e:
            logger.error(f"Failed to load policies: {e}", extra={"user_id": user_id})
            return []

        policies = sort_by_priority([p for p in _rows_to_policies(rows, user_id) if p.enabled])
        self._entries[user_id] = _CacheEntry(policies=policies, loaded_at=self._clock())
        logger.info(f"Loaded {len(policies)} policies", extra={"user_id": user_id})
        return policies

    def invalidate(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._entries.clear()
        else:
            self._entries.pop(user_id, None)


def list_policies(user_id: str) -> list[Policy]:
    """All policies, enabled or not, in ascending priority."""
    return sort_by_priority(_rows_to_policies(list_policy_rows(user_id), user_id))


def get_policy(user_id: str, policy_id: str) -> Policy:
    """
    Raises:
        NotFoundError: If the user has no such policy
    """
    row = get_policy_row(user_id, policy_id)
    if not row:
        raise NotFoundError(f"Policy {policy_id} not found")
    return policy_from_row(row)


def save_policy(user_id: str, raw: dict[str, Any] | Policy, cache: PolicyCache | None = None) -> Policy:
    """Validate and upsert a policy."""
    policy = raw if isinstance(raw, Policy) else validate_policy(raw)
    upsert_policy_row(
        user_id=user_id,
        policy_id=policy.id,
        api_version=policy.api_version,
        kind=policy.kind,
        metadata=policy.metadata.model_dump(),
        spec=policy.spec.model_dump(by_alias=True, exclude_none=True),
        enabled=policy.enabled,
        priority=policy.priority,
    )
    if cache is not None:
        cache.invalidate(user_id)
    return policy


def patch_policy(
    user_id: str, policy_id: str, patch: dict[str, Any], cache: PolicyCache | None = None
) -> Policy:
    """
    Update enabled / name / description / tags / priority.

    Raises:
        NotFoundError: If the policy does not exist
    """
    row = get_policy_row(user_id, policy_id)
    if not row:
        raise NotFoundError(f"Policy {policy_id} not found")

    metadata = dict(row.get("metadata") or {})
    for key in PATCHABLE_METADATA:
        if patch.get(key) is not None:
            metadata[key] = patch[key]

    updates = {
        "metadata": metadata,
        "enabled": patch["enabled"] if patch.get("enabled") is not None else row.get("enabled", True),
        "priority": patch["priority"] if patch.get("priority") is not None else row.get("priority"),
    }
    updated = update_policy_row(user_id, policy_id, updates)
    if not updated:
        raise NotFoundError(f"Policy {policy_id} not found")

    if cache is not None:
        cache.invalidate(user_id)
    logger.info(f"Patched policy {policy_id}", extra={"user_id": user_id})
    return policy_from_row(updated)


def delete_policy(user_id: str, policy_id: str, cache: PolicyCache | None = None) -> bool:
    deleted = delete_policy_row(user_id, policy_id)
    if cache is not None:
        cache.invalidate(user_id)
    return deleted
