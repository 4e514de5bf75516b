from .store import ProjectState, ProjectStateStore, default_state

__all__ = ["ProjectState", "ProjectStateStore", "default_state"]
