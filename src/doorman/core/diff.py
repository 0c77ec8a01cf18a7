"""Generic reconciliation between local and remote keyed collections.

Items are matched by identifier first. Local items without a usable
identifier fall back to natural keys (rule name, IP address), tried in
order so that exact matches are claimed before looser ones. Among
several remote candidates the one with the smallest identifier wins,
which keeps the result independent of remote ordering.
"""

from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from pydantic import BaseModel

from doorman.core.models import ChangeSet, UnifiedConfig, UnifiedIPRule, UnifiedRule
from doorman.errors import ReconciliationError

T = TypeVar("T", bound=BaseModel)

KeyFunc = Callable[[T], Hashable]
EqualFunc = Callable[[T, T], bool]

VOLATILE_FIELDS = frozenset({"id"})


@dataclass
class DiffResult(Generic[T]):
    """Add/update/delete partitions for one collection.

    Updated items carry the identifier of the remote item they replace.
    """

    to_add: list[T] = field(default_factory=list)
    to_update: list[T] = field(default_factory=list)
    to_delete: list[T] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.to_add or self.to_update or self.to_delete)


def content_of(item: BaseModel) -> dict:
    """Return an item's semantic content, excluding volatile fields."""
    return item.model_dump(mode="json", exclude=set(VOLATILE_FIELDS), exclude_none=True)


def rules_equal(a: UnifiedRule, b: UnifiedRule) -> bool:
    """Structural equality for rules, ignoring identifiers."""
    return content_of(a) == content_of(b)


def ip_rules_equal(a: UnifiedIPRule, b: UnifiedIPRule) -> bool:
    """Structural equality for IP rules, ignoring identifiers."""
    return content_of(a) == content_of(b)


def _check_ids(items: Sequence[BaseModel], side: str, require: bool) -> None:
    seen: set[str] = set()
    for index, item in enumerate(items):
        item_id = getattr(item, "id", None)
        if not item_id:
            if require:
                raise ReconciliationError(
                    f"Cannot reconcile: {side} item at index {index} has no identifier",
                    "The provider returned an entry without an id; re-run after checking the remote configuration.",
                )
            continue
        if item_id in seen:
            raise ReconciliationError(
                f"Cannot reconcile: duplicate {side} identifier '{item_id}'",
                "Identifiers must be unique within a collection.",
            )
        seen.add(item_id)


def diff_collections(
    local: Sequence[T],
    remote: Sequence[T],
    equal: EqualFunc,
    natural_keys: Sequence[KeyFunc] = (),
) -> DiffResult[T]:
    """Diff two collections keyed by ``id``.

    Args:
        local: Desired items; identifiers are optional.
        remote: Current remote items; each must carry a unique identifier.
        equal: Structural equality that ignores identifiers.
        natural_keys: Fallback key functions, most specific first.

    Returns:
        Partitions with adds and updates in local order and deletes in
        remote order.

    Raises:
        ReconciliationError: On missing remote or duplicate identifiers.
    """
    _check_ids(remote, "remote", require=True)
    _check_ids(local, "local", require=False)

    remote_by_id = {item.id: item for item in remote}  # type: ignore[attr-defined]
    pairs: dict[int, T] = {}
    claimed: set[str] = set()

    for index, item in enumerate(local):
        item_id = getattr(item, "id", None)
        if item_id and item_id in remote_by_id:
            pairs[index] = remote_by_id[item_id]
            claimed.add(item_id)

    ordered_remote = sorted(remote, key=lambda r: r.id)  # type: ignore[attr-defined]
    for key in natural_keys:
        for index, item in enumerate(local):
            if index in pairs:
                continue
            wanted = key(item)
            for candidate in ordered_remote:
                if candidate.id in claimed:  # type: ignore[attr-defined]
                    continue
                if key(candidate) == wanted:
                    pairs[index] = candidate
                    claimed.add(candidate.id)  # type: ignore[attr-defined]
                    break

    result: DiffResult[T] = DiffResult()
    for index, item in enumerate(local):
        match = pairs.get(index)
        if match is None:
            result.to_add.append(item)
        elif not equal(item, match):
            result.to_update.append(item.model_copy(update={"id": match.id}))  # type: ignore[attr-defined]

    result.to_delete = [r for r in remote if r.id not in claimed]  # type: ignore[attr-defined]
    return result


def diff_rules(local: Sequence[UnifiedRule], remote: Sequence[UnifiedRule]) -> DiffResult[UnifiedRule]:
    """Diff custom rules, falling back to the rule name."""
    return diff_collections(local, remote, rules_equal, natural_keys=(lambda r: r.name,))


def diff_ip_rules(
    local: Sequence[UnifiedIPRule], remote: Sequence[UnifiedIPRule]
) -> DiffResult[UnifiedIPRule]:
    """Diff IP rules, preferring an exact (ip, hostname) match over ip alone."""
    return diff_collections(
        local,
        remote,
        ip_rules_equal,
        natural_keys=(
            lambda r: (r.ip, r.hostname or ""),
            lambda r: r.ip,
        ),
    )


def build_change_set(
    local: UnifiedConfig,
    remote: UnifiedConfig,
    version: int | None = None,
) -> ChangeSet:
    """Compute the full change set between two unified configs."""
    rules = diff_rules(local.rules, remote.rules)
    ips = diff_ip_rules(local.ips, remote.ips)
    return ChangeSet(
        rules_to_add=rules.to_add,
        rules_to_update=rules.to_update,
        rules_to_delete=rules.to_delete,
        ips_to_add=ips.to_add,
        ips_to_update=ips.to_update,
        ips_to_delete=ips.to_delete,
        version=version if version is not None else remote.metadata.version,
    )
