from .orchestrator import TrainingOrchestrator, TrainingSlot

__all__ = ["TrainingOrchestrator", "TrainingSlot"]
