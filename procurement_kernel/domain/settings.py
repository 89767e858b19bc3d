"""
Kernel settings.

Plain frozen values the engines are constructed with.  The kernel never
reads configuration files; ``procurement_config.bridges`` builds these
from the YAML configuration.
"""

from dataclasses import dataclass, field
from datetime import date

from procurement_kernel.domain.public_code import DEFAULT_NUMBER_WIDTH


@dataclass(frozen=True)
class DuplicateCheckPolicy:
    """
    Blocks an item the same requester already asked for recently.

    While ``grace_period_end`` has not passed, a match is only a warning.
    """

    enabled: bool = False
    window_days: int = 7
    grace_period_end: date | None = None

    def in_grace_period(self, today: date) -> bool:
        return self.grace_period_end is not None and today <= self.grace_period_end


@dataclass(frozen=True)
class KernelSettings:
    default_code_prefix: str = "SC"
    code_number_width: int = DEFAULT_NUMBER_WIDTH
    legacy_code_repair: bool = False
    urgent_priority_tags: frozenset[str] = frozenset({"URGENT"})
    require_registered_invoice: bool = False
    duplicate_check: DuplicateCheckPolicy = field(default_factory=DuplicateCheckPolicy)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "urgent_priority_tags",
            frozenset(tag.strip().upper() for tag in self.urgent_priority_tags),
        )
        if self.code_number_width < 1:
            raise ValueError("code_number_width must be >= 1")
