from skimslim.models.pipeline import Pipeline, PipelineContext, RunState
from skimslim.models.sinks import Sink
from skimslim.models.sources import Source
from skimslim.errors import SkimSlimError

__all__ = ["Pipeline", "PipelineContext", "RunState", "Sink", "Source", "SkimSlimError"]
