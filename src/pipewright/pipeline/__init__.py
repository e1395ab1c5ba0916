"""
Pipeline orchestration: stage graph, executor and run lifecycle.
"""

from pipewright.pipeline.core import Pipeline, RunReport
from pipewright.pipeline.executor import ExecutionOutcome, Executor
from pipewright.pipeline.graph import StageGraph
from pipewright.pipeline.loader import PipelineDefinition, load_definition, parse_definition
from pipewright.pipeline.stage import Stage, StageContext

__all__ = [
    "Pipeline",
    "RunReport",
    "Executor",
    "ExecutionOutcome",
    "StageGraph",
    "PipelineDefinition",
    "load_definition",
    "parse_definition",
    "Stage",
    "StageContext",
]
