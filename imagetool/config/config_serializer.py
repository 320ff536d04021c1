from typing import Any, Dict

from ..core.models import BuildSettings, PipelineDefinition, Stage


class ConfigSerializer:
    """Utility class for serializing pipeline definitions to plain dictionaries"""

    @staticmethod
    def definition_to_dict(definition: PipelineDefinition) -> Dict[str, Any]:
        """Convert PipelineDefinition to dictionary for YAML/JSON serialization"""
        result = {
            'name': definition.name,
            'tag': definition.tag,
            'settings': ConfigSerializer.settings_to_dict(definition.settings),
            'stages': [ConfigSerializer.stage_to_dict(stage) for stage in definition.stages],
        }
        if definition.description:
            result['description'] = definition.description
        return result

    @staticmethod
    def settings_to_dict(settings: BuildSettings) -> Dict[str, Any]:
        return {
            'noninteractive': settings.noninteractive,
            'timezone': settings.timezone,
            'locale': settings.locale,
            'parallel_jobs': settings.parallel_jobs,
        }

    @staticmethod
    def stage_to_dict(stage: Stage) -> Dict[str, Any]:
        """Stages are always serialized in raw instruction form, never as recipes"""
        result = {
            'name': stage.name,
            'base_image': stage.base_image,
            'instructions': [instruction.to_dict() for instruction in stage.instructions],
        }
        if stage.outputs:
            result['outputs'] = list(stage.outputs)
        return result
