"""Closed set of transformation strategies, one per job type."""

from __future__ import annotations

from ..errors import UnsupportedJobType
from ..llm.text_generation import TextGenerator
from .base import StrategyResult, TransformationStrategy
from .custom import CustomPromptStrategy
from .dependency_update import DependencyUpdateStrategy
from .module_update import ModuleUpdateStrategy
from .security_scan import SecurityScanStrategy

STRATEGIES: dict[str, type[TransformationStrategy]] = {
    DependencyUpdateStrategy.job_type: DependencyUpdateStrategy,
    SecurityScanStrategy.job_type: SecurityScanStrategy,
    ModuleUpdateStrategy.job_type: ModuleUpdateStrategy,
    CustomPromptStrategy.job_type: CustomPromptStrategy,
}


def build_strategy(job_type: str, generator: TextGenerator) -> TransformationStrategy:
    """Instantiate the strategy for ``job_type``.

    Raises:
        UnsupportedJobType: When ``job_type`` is not one of the known types.
    """
    strategy_cls = STRATEGIES.get(job_type)
    if strategy_cls is None:
        raise UnsupportedJobType(job_type)
    return strategy_cls(generator)


__all__ = [
    "STRATEGIES",
    "CustomPromptStrategy",
    "DependencyUpdateStrategy",
    "ModuleUpdateStrategy",
    "SecurityScanStrategy",
    "StrategyResult",
    "TransformationStrategy",
    "build_strategy",
]
