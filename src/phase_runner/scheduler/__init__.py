from .grouper import DependencyGraph, build_dependency_graph, can_execute, find_ordering_issues, group_by_phase
from .instructions import build_task_instructions
from .service import OrchestratorService, PhasePlan, RunAnalysis, create_orchestrator, select_tasks

__all__ = [
    "DependencyGraph",
    "OrchestratorService",
    "PhasePlan",
    "RunAnalysis",
    "build_dependency_graph",
    "build_task_instructions",
    "can_execute",
    "create_orchestrator",
    "find_ordering_issues",
    "group_by_phase",
    "select_tasks",
]
