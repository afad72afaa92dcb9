"""Quality gate execution for Ralph."""

from ralph.quality.gates import GateRunner, ShellGateRunner, run_gate, summarize_gate_results

__all__ = ["GateRunner", "ShellGateRunner", "run_gate", "summarize_gate_results"]
