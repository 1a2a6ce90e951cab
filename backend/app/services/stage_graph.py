"""Stage graphs for the cannabis and produce lifecycles.

Each domain has an enumeration of stages and a constant table mapping
every stage to the ordered stages it may move to next.  ``completed`` and
``destroyed`` are terminal.  ``destroyed`` is never a graph target: it is
reached only through the destruction workflow, from any non-terminal
stage.

Everything here is pure and safe to call from any task.
"""

import enum
from types import MappingProxyType

from app.middleware.exceptions import UnknownStageError, ValidationError
from app.models.batch import DomainType
from app.models.sync_job import RegulatoryPhase


class CannabisStage(str, enum.Enum):
    PLANNING = "planning"
    GERMINATION = "germination"
    CLONE = "clone"
    VEGETATIVE = "vegetative"
    FLOWERING = "flowering"
    HARVEST = "harvest"
    DRYING = "drying"
    CURING = "curing"
    PACKAGING = "packaging"
    COMPLETED = "completed"
    DESTROYED = "destroyed"


class ProduceStage(str, enum.Enum):
    PLANNING = "planning"
    SEEDING = "seeding"
    GERMINATION = "germination"
    SEEDLING = "seedling"
    TRANSPLANT = "transplant"
    GROWING = "growing"
    HARVEST_READY = "harvest_ready"
    HARVESTING = "harvesting"
    WASHING = "washing"
    GRADING = "grading"
    PACKING = "packing"
    STORAGE = "storage"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    DESTROYED = "destroyed"


_C = CannabisStage
_P = ProduceStage

CANNABIS_TRANSITIONS = MappingProxyType({
    _C.PLANNING: (_C.GERMINATION, _C.CLONE),
    _C.GERMINATION: (_C.CLONE, _C.VEGETATIVE),
    _C.CLONE: (_C.VEGETATIVE,),
    _C.VEGETATIVE: (_C.FLOWERING,),
    _C.FLOWERING: (_C.HARVEST,),
    _C.HARVEST: (_C.DRYING,),
    _C.DRYING: (_C.CURING, _C.PACKAGING),
    _C.CURING: (_C.PACKAGING,),
    _C.PACKAGING: (_C.COMPLETED,),
    _C.COMPLETED: (),
    _C.DESTROYED: (),
})

PRODUCE_TRANSITIONS = MappingProxyType({
    _P.PLANNING: (_P.SEEDING, _P.GERMINATION),
    _P.SEEDING: (_P.GERMINATION,),
    _P.GERMINATION: (_P.SEEDLING,),
    _P.SEEDLING: (_P.TRANSPLANT, _P.GROWING),
    _P.TRANSPLANT: (_P.GROWING,),
    _P.GROWING: (_P.HARVEST_READY,),
    _P.HARVEST_READY: (_P.HARVESTING,),
    _P.HARVESTING: (_P.WASHING, _P.GRADING),
    _P.WASHING: (_P.GRADING, _P.PACKING),
    _P.GRADING: (_P.PACKING,),
    _P.PACKING: (_P.STORAGE, _P.SHIPPED),
    _P.STORAGE: (_P.SHIPPED,),
    _P.SHIPPED: (_P.COMPLETED,),
    _P.COMPLETED: (),
    _P.DESTROYED: (),
})

STAGE_ENUMS = {
    DomainType.CANNABIS: CannabisStage,
    DomainType.PRODUCE: ProduceStage,
}

TRANSITIONS = {
    DomainType.CANNABIS: CANNABIS_TRANSITIONS,
    DomainType.PRODUCE: PRODUCE_TRANSITIONS,
}

TERMINAL_STAGES = frozenset({"completed", "destroyed"})

# Stage → regulatory growth phase.  Produce is never reported.
CANNABIS_PHASES = MappingProxyType({
    _C.GERMINATION: RegulatoryPhase.CLONE,
    _C.CLONE: RegulatoryPhase.CLONE,
    _C.VEGETATIVE: RegulatoryPhase.VEGETATIVE,
    _C.FLOWERING: RegulatoryPhase.FLOWERING,
})


def _check_tables() -> None:
    """Every stage of every domain must have a row, and every target must
    be a stage of the same domain."""
    for domain, stage_enum in STAGE_ENUMS.items():
        table = TRANSITIONS[domain]
        missing = set(stage_enum) - set(table)
        if missing:
            raise RuntimeError(
                f"{domain.value} transition table missing stages: "
                f"{sorted(s.value for s in missing)}"
            )
        for source, targets in table.items():
            for target in targets:
                if not isinstance(target, stage_enum):
                    raise RuntimeError(
                        f"{domain.value}: {source.value} → {target!r} is not a {domain.value} stage"
                    )
        for terminal in TERMINAL_STAGES:
            if table[stage_enum(terminal)]:
                raise RuntimeError(f"{domain.value}: terminal stage {terminal} has exits")


_check_tables()


def _domain(domain) -> DomainType:
    try:
        return DomainType(domain)
    except ValueError:
        raise ValidationError(f"Unknown domain type: {domain!r}") from None


def parse_stage(domain, stage: str) -> enum.Enum:
    """Return the stage enum member for ``stage`` or raise UnknownStageError."""
    domain = _domain(domain)
    try:
        return STAGE_ENUMS[domain](stage)
    except ValueError:
        raise UnknownStageError(domain.value, stage) from None


def next_stages(domain, from_stage: str) -> list[str]:
    """Ordered list of stages reachable from ``from_stage``."""
    source = parse_stage(domain, from_stage)
    return [s.value for s in TRANSITIONS[_domain(domain)][source]]


def is_allowed(domain, from_stage: str, to_stage: str) -> bool:
    """Whether the domain graph has an edge ``from_stage → to_stage``."""
    source = parse_stage(domain, from_stage)
    target = parse_stage(domain, to_stage)
    return target in TRANSITIONS[_domain(domain)][source]


def regulatory_phase(domain, stage: str) -> RegulatoryPhase | None:
    """Regulatory growth phase for a stage, or None when unmapped."""
    if _domain(domain) is not DomainType.CANNABIS:
        return None
    return CANNABIS_PHASES.get(parse_stage(domain, stage))


def initial_stages(domain) -> list[str]:
    """Stages a new batch may start in: every non-terminal stage."""
    return [
        s.value for s in STAGE_ENUMS[_domain(domain)]
        if s.value not in TERMINAL_STAGES
    ]
