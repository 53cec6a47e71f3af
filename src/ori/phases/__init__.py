from ori.phases.base import PhaseExecutor
from ori.phases.document import DocumentPhase
from ori.phases.implement import ImplementPhase
from ori.phases.research import ResearchPhase
from ori.phases.sme_gate import SmeGatePhase, applicable_smes
from ori.phases.strategy import StrategyPhase
from ori.phases.verify import VerifyPhase, verification_decision

__all__ = [
    "DocumentPhase",
    "ImplementPhase",
    "PhaseExecutor",
    "ResearchPhase",
    "SmeGatePhase",
    "StrategyPhase",
    "VerifyPhase",
    "applicable_smes",
    "verification_decision",
]
