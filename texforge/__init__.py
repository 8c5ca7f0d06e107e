"""texforge - LaTeX documents from free-form text.

Routes generation across hosted AI providers with fallback, then compiles the
result with tectonic, repairing it once if it fails.
"""

__version__ = "1.0.0"

from texforge.config import TexforgeConfig
from texforge.core.cycle import CompileFixCycle, FixCycleResult
from texforge.core.orchestrator import (
    GenerationOrchestrator,
    GenerationOutcome,
    GenerationRequest,
)
from texforge.tiers import SubscriptionTier

__all__ = [
    "__version__",
    "CompileFixCycle",
    "FixCycleResult",
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationRequest",
    "SubscriptionTier",
    "TexforgeConfig",
]
