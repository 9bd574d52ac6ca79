"""healing-pipeline - run, check, fix, repeat until every marker passes."""

from importlib.metadata import PackageNotFoundError, version

from healing_pipeline.schemas import Iteration, Marker, Pipeline, PipelineStep, RunSession, RunStatus

__all__ = ["Iteration", "Marker", "Pipeline", "PipelineStep", "RunSession", "RunStatus"]

try:
    __version__ = version("healing-pipeline")
except PackageNotFoundError:
    __version__ = "0.0.0"
