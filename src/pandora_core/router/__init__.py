"""Request dispatcher and evidence read helpers."""

from .dispatcher import Dispatcher, build_scoped_analysis_prompt
from .evidence import extract_metric, filter_evidence_by_entity
from .types import DeliverablePipeline, DeliverableResult, ExecutionResult, RequestType, RouterDecision

__all__ = [
    "DeliverablePipeline",
    "DeliverableResult",
    "Dispatcher",
    "ExecutionResult",
    "RequestType",
    "RouterDecision",
    "build_scoped_analysis_prompt",
    "extract_metric",
    "filter_evidence_by_entity",
]
