# Pipeline package initialization
from .base import Pipeline, PipelineContext, PipelineStats, StageResult
from .pipeline_builder import PipelineBuilder

__all__ = [
    'Pipeline',
    'PipelineContext',
    'PipelineStats',
    'StageResult',
    'PipelineBuilder'
]
