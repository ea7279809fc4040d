"""Cross-backend transfer orchestration"""

from transfer_module.orchestrator import TransferOrchestrator, TransferResult

__all__ = ["TransferOrchestrator", "TransferResult"]
