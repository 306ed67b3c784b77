"""
Action allowlist: the only gate between a suggested action and a live change.

`ActionAllowlist.validate()` is pure. It returns a `ValidatedAction` witness,
which is the only thing the executor accepts, or raises an `AllowlistError`.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from selfimprove.domain.errors import (
    IllegalValue,
    ParamOutOfBounds,
    StaleAction,
    StepTooLarge,
    TypeMismatch,
    UnknownActionKind,
    UnknownTarget,
)
from selfimprove.domain.models import (
    ActionId,
    ActionKind,
    AdjustParamAction,
    ParamKind,
    ParamValue,
    ResourceType,
    ScaleResourceAction,
    SuggestedAction,
    ToggleFeatureAction,
    new_action_id,
)

# Float steps such as 0.8 -> 0.85 must not fail on representation error
_FLOAT_EPSILON = 1e-9


class ParamBounds(BaseModel):
    """Legal range of one adjustable parameter."""

    kind: ParamKind
    current: ParamValue
    min: float | None = None
    max: float | None = None
    step: float | None = None
    choices: list[str] | None = None
    description: str = ""

    @classmethod
    def integer(
        cls, current: int, min: int, max: int, step: int, description: str = ""
    ) -> "ParamBounds":
        return cls(
            kind=ParamKind.INTEGER,
            current=ParamValue.integer(current),
            min=min,
            max=max,
            step=step,
            description=description,
        )

    @classmethod
    def floating(
        cls, current: float, min: float, max: float, step: float, description: str = ""
    ) -> "ParamBounds":
        return cls(
            kind=ParamKind.FLOAT,
            current=ParamValue.floating(current),
            min=min,
            max=max,
            step=step,
            description=description,
        )

    @classmethod
    def duration_ms(
        cls, current: int, min: int, max: int, step: int, description: str = ""
    ) -> "ParamBounds":
        return cls(
            kind=ParamKind.DURATION_MS,
            current=ParamValue.duration_ms(current),
            min=min,
            max=max,
            step=step,
            description=description,
        )

    @classmethod
    def enumerated(cls, current: str, choices: list[str], description: str = "") -> "ParamBounds":
        return cls(
            kind=ParamKind.STRING,
            current=ParamValue.string(current),
            choices=choices,
            description=description,
        )

    def validate_value(self, key: str, value: ParamValue) -> None:
        if value.kind is not self.kind:
            raise TypeMismatch(key, self.kind.value, value.kind.value)

        if value.is_numeric:
            got = float(value.value)
            low = self.min if self.min is not None else got
            high = self.max if self.max is not None else got
            if got < low or got > high:
                raise ParamOutOfBounds(key, low, high, got)
        elif self.choices is not None and str(value) not in self.choices:
            raise IllegalValue(key, self.choices, str(value))

    def is_current(self, value: ParamValue) -> bool:
        live = self.current.as_float()
        if live is not None and value.is_numeric:
            return abs(live - float(value.value)) <= _FLOAT_EPSILON
        return value == self.current

    def validate_step(self, key: str, old: ParamValue, new: ParamValue) -> None:
        """Check the change against the current value. `old` must still be current."""
        if old.kind is not self.kind:
            raise TypeMismatch(key, self.kind.value, old.kind.value)
        if not self.is_current(old):
            raise StaleAction(key, str(self.current), str(old))
        if self.step is None or not new.is_numeric:
            return
        change = abs(float(new.value) - float(self.current.value))
        if change > self.step + _FLOAT_EPSILON:
            raise StepTooLarge(key, change, self.step)

    def stepped(self, increase: bool) -> ParamValue | None:
        """The current value moved one step, clamped to bounds. None when not numeric."""
        current = self.current.as_float()
        if current is None or self.step is None:
            return None
        target = current + self.step if increase else current - self.step
        if self.max is not None:
            target = min(target, self.max)
        if self.min is not None:
            target = max(target, self.min)
        if self.kind is ParamKind.FLOAT:
            return ParamValue.floating(round(target, 6))
        return ParamValue(kind=self.kind, value=int(round(target)))


class ResourceBounds(BaseModel):
    min: int = Field(ge=0)
    max: int = Field(ge=0)
    step: int = Field(gt=0)

    @property
    def midpoint(self) -> int:
        return self.min + (self.max - self.min) // 2

    def validate(
        self, resource: ResourceType, old: int, new: int, live: int | None = None
    ) -> None:
        if live is not None and old != live:
            raise StaleAction(resource.value, str(live), str(old))
        if new < self.min or new > self.max:
            raise ParamOutOfBounds(resource.value, self.min, self.max, new)
        if abs(new - old) > self.step:
            raise StepTooLarge(resource.value, abs(new - old), self.step)


@dataclass(frozen=True)
class ValidatedAction:
    """Proof that an action passed the allowlist. Built only by `ActionAllowlist.validate`."""

    action: SuggestedAction
    action_id: ActionId
    validated_at: datetime
    _witness: object = field(repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._witness is not _WITNESS:
            raise TypeError("ValidatedAction can only be created by ActionAllowlist.validate()")


_WITNESS = object()


class AllowlistSummary(BaseModel):
    param_count: int
    feature_count: int
    resource_count: int
    param_keys: list[str]
    features: list[str]
    enabled_kinds: list[ActionKind]


class ConfigState(BaseModel):
    """Point-in-time values of everything the allowlist governs."""

    params: dict[str, ParamValue] = Field(default_factory=dict)
    features: dict[str, bool] = Field(default_factory=dict)
    resources: dict[ResourceType, int] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_allowlist(cls, allowlist: "ActionAllowlist") -> "ConfigState":
        return cls(
            params={key: bounds.current for key, bounds in allowlist.params.items()},
            features={name: True for name in allowlist.features},
            resources={r: bounds.midpoint for r, bounds in allowlist.resources.items()},
        )


class ActionAllowlist:
    """Registry of action kinds and the bounds of their targets."""

    def __init__(
        self,
        params: dict[str, ParamBounds] | None = None,
        features: set[str] | None = None,
        resources: dict[ResourceType, ResourceBounds] | None = None,
        enabled_kinds: set[ActionKind] | None = None,
    ) -> None:
        self.params: dict[str, ParamBounds] = dict(params or {})
        self.features: set[str] = set(features or set())
        self.resources: dict[ResourceType, ResourceBounds] = dict(resources or {})
        self.enabled_kinds: set[ActionKind] = (
            set(enabled_kinds) if enabled_kinds is not None else set(ActionKind)
        )

    @classmethod
    def default(cls) -> "ActionAllowlist":
        params = {
            "REQUEST_TIMEOUT_MS": ParamBounds.integer(
                30000, 5000, 60000, 5000, "HTTP request timeout for pipe calls"
            ),
            "MAX_RETRIES": ParamBounds.integer(
                3, 1, 10, 1, "Maximum retry attempts for failed pipe calls"
            ),
            "RETRY_DELAY_MS": ParamBounds.integer(
                1000, 500, 5000, 500, "Delay between retry attempts"
            ),
            "DATABASE_MAX_CONNECTIONS": ParamBounds.integer(
                5, 1, 50, 5, "Maximum storage connection pool size"
            ),
            "REFLECTION_QUALITY_THRESHOLD": ParamBounds.floating(
                0.8, 0.5, 0.95, 0.05, "Quality threshold for reflection iterations"
            ),
            "GOT_PRUNE_THRESHOLD": ParamBounds.floating(
                0.3, 0.1, 0.7, 0.1, "Score threshold for graph-of-thoughts pruning"
            ),
            "SI_EMA_ALPHA": ParamBounds.floating(
                0.1, 0.05, 0.3, 0.05, "EMA smoothing factor for baselines"
            ),
            "SI_WARNING_MULTIPLIER": ParamBounds.floating(
                1.5, 1.2, 2.0, 0.1, "Warning threshold multiplier"
            ),
            "SI_CRITICAL_MULTIPLIER": ParamBounds.floating(
                2.0, 1.5, 3.0, 0.2, "Critical threshold multiplier"
            ),
        }
        features = {
            "ENABLE_AUTO_REFLECTION",
            "ENABLE_DETECTION_POST_PROCESS",
            "ENABLE_GOT_AGGRESSIVE_PRUNING",
            "ENABLE_VERBOSE_LOGGING",
            "ENABLE_FALLBACK_TRACKING",
            "ENABLE_QUALITY_ASSESSMENT",
        }
        resources = {
            ResourceType.MAX_CONCURRENT_REQUESTS: ResourceBounds(min=1, max=20, step=2),
            ResourceType.CONNECTION_POOL_SIZE: ResourceBounds(min=1, max=50, step=5),
            ResourceType.CACHE_SIZE: ResourceBounds(min=100, max=10000, step=100),
            ResourceType.TIMEOUT_MS: ResourceBounds(min=5000, max=60000, step=5000),
            ResourceType.MAX_RETRIES: ResourceBounds(min=1, max=10, step=1),
            ResourceType.RETRY_DELAY_MS: ResourceBounds(min=500, max=5000, step=500),
        }
        return cls(params=params, features=features, resources=resources)

    def validate(
        self, action: SuggestedAction, state: ConfigState | None = None
    ) -> ValidatedAction:
        """Check an action against the registry. Raises AllowlistError on rejection.

        Steps are measured from the live value: the registered current value for
        params and, when `state` is given, its value for resources. An action
        built against an older value raises StaleAction.
        """
        kind = action.action_kind
        if kind not in self.enabled_kinds:
            raise UnknownActionKind(kind.value)

        if isinstance(action, AdjustParamAction):
            bounds = self.params.get(action.key)
            if bounds is None:
                raise UnknownTarget(kind.value, action.key)
            bounds.validate_value(action.key, action.new_value)
            bounds.validate_step(action.key, action.old_value, action.new_value)
        elif isinstance(action, ToggleFeatureAction):
            if action.feature_name not in self.features:
                raise UnknownTarget(kind.value, action.feature_name)
        elif isinstance(action, ScaleResourceAction):
            resource_bounds = self.resources.get(action.resource)
            if resource_bounds is None:
                raise UnknownTarget(kind.value, action.resource.value)
            live = state.resources.get(action.resource) if state is not None else None
            resource_bounds.validate(action.resource, action.old_value, action.new_value, live)
        # restart, clear cache and no-op carry no bounded values

        return ValidatedAction(
            action=action,
            action_id=new_action_id(),
            validated_at=datetime.now(UTC),
            _witness=_WITNESS,
        )

    def add_param(self, key: str, bounds: ParamBounds) -> None:
        self.params[key] = bounds

    def add_feature(self, feature: str) -> None:
        self.features.add(feature)

    def add_resource(self, resource: ResourceType, bounds: ResourceBounds) -> None:
        self.resources[resource] = bounds

    def param_bounds(self, key: str) -> ParamBounds | None:
        return self.params.get(key)

    def update_param_current(self, key: str, value: ParamValue) -> None:
        bounds = self.params.get(key)
        if bounds is not None:
            self.params[key] = bounds.model_copy(update={"current": value})

    def summary(self) -> AllowlistSummary:
        return AllowlistSummary(
            param_count=len(self.params),
            feature_count=len(self.features),
            resource_count=len(self.resources),
            param_keys=sorted(self.params),
            features=sorted(self.features),
            enabled_kinds=sorted(self.enabled_kinds, key=lambda k: k.value),
        )

    def prompt_context(self) -> str:
        """Human-readable allowlist used in the action-selection prompt."""
        lines = ["Adjustable parameters:"]
        for key in sorted(self.params):
            b = self.params[key]
            if b.choices is not None:
                lines.append(f"- {key} (current {b.current}, one of {', '.join(b.choices)})")
            else:
                lines.append(
                    f"- {key} (current {b.current}, range [{b.min}, {b.max}], max step {b.step})"
                    + (f": {b.description}" if b.description else "")
                )
        lines.append(f"Toggleable features: {', '.join(sorted(self.features)) or 'none'}")
        lines.append(
            "Scalable resources: "
            + (
                ", ".join(
                    f"{r.value} [{b.min}, {b.max}] step {b.step}"
                    for r, b in sorted(self.resources.items(), key=lambda i: i[0].value)
                )
                or "none"
            )
        )
        return "\n".join(lines)
