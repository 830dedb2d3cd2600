"""
Verification plane public API.

Exports the gate pipeline, the council gate and the built-in checkers.
"""

from build_orchestrator.verification_plane.checkers import (
    AcceptanceCriteriaGate,
    CallableGate,
    NonEmptyOutputGate,
    OutputContractGate,
)
from build_orchestrator.verification_plane.gates import (
    CouncilGate,
    Gate,
    GatePipeline,
    GatePolicy,
    GateReport,
    GateResult,
    ValidationImpossibleError,
    evaluate_gate,
)

__all__ = [
    "AcceptanceCriteriaGate",
    "CallableGate",
    "CouncilGate",
    "Gate",
    "GatePipeline",
    "GatePolicy",
    "GateReport",
    "GateResult",
    "NonEmptyOutputGate",
    "OutputContractGate",
    "ValidationImpossibleError",
    "evaluate_gate",
]
