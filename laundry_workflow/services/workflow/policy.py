"""Transition policy: which target statuses are legal from a given status.

A policy is resolved per (tenant, service category) from, in order, the
active category settings row, the active tenant-default row, and the
compiled-in default matrix. The first source found wins entirely; sources
are never merged.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, field_validator

from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.models.workflow_settings import WorkflowSettings
from laundry_workflow.services.workflow.enums import DEFAULT_TRANSITIONS, OrderStatus
from laundry_workflow.services.workflow.errors import InvalidState

logger = get_logger(__name__)


def _normalize_status_key(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class GateRuleSet(BaseModel):
    """Predicates that must hold before an order may enter a status.

    Unknown keys (for example ``customValidation``) are ignored.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    require_all_items_assembled: bool = Field(
        default=False, alias="requireAllItemsAssembled"
    )
    require_all_pieces_scanned: bool = Field(
        default=False, alias="requireAllPiecesScanned"
    )
    require_qa_passed: bool = Field(default=False, alias="requireQAPassed")
    require_no_unresolved_issues: bool = Field(
        default=False, alias="requireNoUnresolvedIssues"
    )
    require_rack_location: bool = Field(default=False, alias="requireRackLocation")

    @property
    def is_empty(self) -> bool:
        return not any(
            (
                self.require_all_items_assembled,
                self.require_all_pieces_scanned,
                self.require_qa_passed,
                self.require_no_unresolved_issues,
                self.require_rack_location,
            )
        )


class TransitionMap(RootModel[Dict[OrderStatus, List[OrderStatus]]]):
    """Parsed ``from_status -> [to_status]`` map from a settings row."""

    @field_validator("root", mode="before")
    @classmethod
    def normalize(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        normalized = {}
        for key, targets in value.items():
            if isinstance(targets, (list, tuple, set)):
                targets = [_normalize_status_key(t) for t in targets]
            normalized[_normalize_status_key(key)] = targets
        return normalized


class GateRuleMap(RootModel[Dict[OrderStatus, GateRuleSet]]):
    """Parsed ``to_status -> rules`` map from a settings row."""

    @field_validator("root", mode="before")
    @classmethod
    def normalize(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {_normalize_status_key(k): v for k, v in value.items()}


def parse_status(value: Any, **context: Any) -> OrderStatus:
    """Parse a stored status value or raise InvalidState."""
    status = OrderStatus.parse(value)
    if status is None:
        raise InvalidState(
            f"Unknown order status: {value!r}",
            status=value if isinstance(value, str) else repr(value),
            **context,
        )
    return status


class TransitionPolicy(ABC):
    """Resolved transition graph plus quality-gate rules for one scope."""

    source: str = "abstract"

    @abstractmethod
    def _targets(self, from_status: OrderStatus) -> FrozenSet[OrderStatus]:
        """Configured targets for a known, non-terminal status."""

    def gate_rules(self, to_status: OrderStatus) -> Optional[GateRuleSet]:
        """Quality-gate rules attached to a target status, if any."""
        return None

    def allowed_transitions(self, from_status: Any) -> FrozenSet[OrderStatus]:
        """
        Set of statuses reachable in one step from ``from_status``.

        Raises:
            InvalidState: If ``from_status`` is not a known status
        """
        status = parse_status(from_status, policy=self.source)
        if status.is_terminal():
            return frozenset()
        return self._targets(status)

    def is_transition_allowed(self, from_status: Any, to_status: Any) -> bool:
        target = OrderStatus.parse(to_status)
        if target is None:
            return False
        return target in self.allowed_transitions(from_status)


class DefaultPolicy(TransitionPolicy):
    """Compiled-in system default matrix with no quality gates."""

    source = "default"

    def _targets(self, from_status: OrderStatus) -> FrozenSet[OrderStatus]:
        return DEFAULT_TRANSITIONS.get(from_status, frozenset())


class ConfiguredPolicy(TransitionPolicy):
    """Policy loaded from a tenant WorkflowSettings row."""

    source = "configured"

    def __init__(
        self,
        transitions: Dict[OrderStatus, FrozenSet[OrderStatus]],
        gate_rules: Optional[Dict[OrderStatus, GateRuleSet]] = None,
        settings_id: Optional[UUID] = None,
    ):
        self._transitions = transitions
        self._gate_rules = gate_rules or {}
        self.settings_id = settings_id

    @classmethod
    def from_raw(
        cls,
        status_transitions: Any,
        quality_gate_rules: Any = None,
        settings_id: Optional[UUID] = None,
    ) -> "ConfiguredPolicy":
        """
        Build a policy from raw JSON settings.

        Raises:
            InvalidState: If either map names unknown statuses or is malformed
        """
        try:
            transitions = TransitionMap.model_validate(status_transitions or {}).root
            rules = GateRuleMap.model_validate(quality_gate_rules or {}).root
        except ValidationError as e:
            logger.error(
                "Workflow settings failed to parse",
                settings_id=str(settings_id) if settings_id else None,
                errors=e.errors(include_url=False),
            )
            raise InvalidState(
                "Workflow settings contain an invalid transition map or rule set",
                settings_id=str(settings_id) if settings_id else None,
            ) from e

        return cls(
            transitions={k: frozenset(v) for k, v in transitions.items()},
            gate_rules=rules,
            settings_id=settings_id,
        )

    @classmethod
    def from_settings(cls, settings: WorkflowSettings) -> "ConfiguredPolicy":
        return cls.from_raw(
            settings.status_transitions,
            settings.quality_gate_rules,
            settings_id=settings.id,
        )

    def _targets(self, from_status: OrderStatus) -> FrozenSet[OrderStatus]:
        return self._transitions.get(from_status, frozenset())

    def gate_rules(self, to_status: OrderStatus) -> Optional[GateRuleSet]:
        return self._gate_rules.get(to_status)


DEFAULT_POLICY = DefaultPolicy()


class TransitionPolicyResolver:
    """Pick the policy for a (tenant, service category) pair."""

    def __init__(self, repository):
        self.repository = repository

    async def resolve(
        self,
        tenant_id: UUID,
        service_category_code: Optional[str] = None,
    ) -> TransitionPolicy:
        scopes = [service_category_code] if service_category_code else []
        scopes.append(None)

        for scope in scopes:
            settings = await self.repository.get_active_settings(tenant_id, scope)
            if settings is not None:
                logger.debug(
                    "Resolved configured workflow policy",
                    tenant_id=str(tenant_id),
                    service_category_code=scope,
                    settings_id=str(settings.id),
                )
                return ConfiguredPolicy.from_settings(settings)

        return DEFAULT_POLICY

    async def allowed_transitions(
        self,
        tenant_id: UUID,
        service_category_code: Optional[str],
        from_status: Any,
    ) -> FrozenSet[OrderStatus]:
        policy = await self.resolve(tenant_id, service_category_code)
        return policy.allowed_transitions(from_status)

    async def is_transition_allowed(
        self,
        tenant_id: UUID,
        from_status: Any,
        to_status: Any,
        service_category_code: Optional[str] = None,
    ) -> bool:
        policy = await self.resolve(tenant_id, service_category_code)
        return policy.is_transition_allowed(from_status, to_status)
