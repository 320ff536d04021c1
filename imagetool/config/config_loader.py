import yaml
from typing import Any, Dict, List, Optional

from ..core.enums import InstructionType
from ..core.errors import PipelineDefinitionError
from ..core.models import (
    INSTRUCTION_CLASSES,
    ArtifactHandle,
    BuildSettings,
    CopyFile,
    Entrypoint,
    Cmd,
    InstallPackages,
    PinnedDependency,
    PipelineDefinition,
    Stage,
    SwitchUser,
)
from ..recipes import ArtifactPackager, EnvironmentAssembler, ToolchainBuilder, ToolchainSpec, UserSpec


RECIPES = {
    'toolchain': ToolchainBuilder,
    'environment': EnvironmentAssembler,
    'packager': ArtifactPackager,
}


class ConfigLoader:
    """Load and validate pipeline definitions"""

    @staticmethod
    def load_from_yaml(file_path: str) -> PipelineDefinition:
        """Load a pipeline definition from a YAML file"""
        try:
            with open(file_path, 'r') as file:
                config_dict = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise PipelineDefinitionError(f"Invalid YAML in {file_path}: {e}") from e

        if config_dict is None:
            raise PipelineDefinitionError(f"Empty or invalid YAML file: {file_path}")
        if not isinstance(config_dict, dict):
            raise PipelineDefinitionError(f"Top level of {file_path} must be a mapping")

        return ConfigLoader.load_from_dict(config_dict)

    @staticmethod
    def load_from_dict(config_dict: Dict[str, Any]) -> PipelineDefinition:
        """Load a pipeline definition from a dictionary"""
        processed_config = dict(config_dict)

        name = processed_config.get('name')
        if not name:
            raise PipelineDefinitionError("Pipeline config requires a 'name'")

        unknown = set(processed_config) - {'name', 'tag', 'description', 'settings', 'stages'}
        if unknown:
            raise PipelineDefinitionError(f"Pipeline {name}: unknown keys {sorted(unknown)}")

        try:
            settings = BuildSettings(**(processed_config.get('settings') or {}))
        except (TypeError, ValueError) as e:
            raise PipelineDefinitionError(f"Pipeline {name}: invalid settings: {e}") from e

        stages: List[Stage] = []
        for index, stage_dict in enumerate(processed_config.get('stages') or []):
            if not isinstance(stage_dict, dict):
                raise PipelineDefinitionError(f"Pipeline {name}: stage #{index + 1} must be a mapping")
            if 'recipe' in stage_dict:
                stage = ConfigLoader._process_recipe_stage(stage_dict, settings, stages, name)
            else:
                stage = ConfigLoader._process_stage(stage_dict, name)
            stages.append(stage)

        return PipelineDefinition(
            name=name,
            tag=processed_config.get('tag') or f"{name}:latest",
            stages=tuple(stages),
            settings=settings,
            description=processed_config.get('description'),
        )

    @staticmethod
    def _process_recipe_stage(
        stage_dict: Dict[str, Any],
        settings: BuildSettings,
        defined: List[Stage],
        pipeline_name: str
    ) -> Stage:
        params = dict(stage_dict)
        recipe_name = params.pop('recipe')
        recipe_cls = RECIPES.get(recipe_name)
        if recipe_cls is None:
            raise PipelineDefinitionError(
                f"Pipeline {pipeline_name}: unknown recipe {recipe_name!r}. "
                f"Supported: {', '.join(sorted(RECIPES))}"
            )

        stage_name = params.pop('name', None)
        if stage_name:
            params['stage_name'] = stage_name
        label = stage_name or recipe_name

        try:
            if 'dependency' in params:
                params['dependency'] = PinnedDependency(**params['dependency'])
            if 'user' in params:
                params['user'] = UserSpec(**params['user'])
            if 'toolchain' in params:
                toolchain = dict(params['toolchain'])
                if 'components' in toolchain:
                    toolchain['components'] = tuple(toolchain['components'])
                params['toolchain'] = ToolchainSpec(**toolchain)
            if 'tool' in params:
                params['tool'] = ConfigLoader._resolve_artifact(params['tool'], defined, label)
            recipe = recipe_cls(**params)
            return recipe.build(settings)
        except PipelineDefinitionError:
            raise
        except (TypeError, ValueError) as e:
            raise PipelineDefinitionError(
                f"Pipeline {pipeline_name}: stage {label} ({recipe_name}): {e}"
            ) from e

    @staticmethod
    def _resolve_artifact(ref: Any, defined: List[Stage], consumer: str) -> ArtifactHandle:
        """
        Resolve an artifact reference.

        Accepts either the name of an earlier stage with exactly one output, or
        a mapping with 'stage' and 'path'.
        """
        by_name = {stage.name: stage for stage in defined}
        if isinstance(ref, str):
            producer = by_name.get(ref)
            if producer is None:
                raise PipelineDefinitionError(
                    f"Stage {consumer} uses artifact of {ref}, which is not defined before it"
                )
            if len(producer.outputs) != 1:
                raise PipelineDefinitionError(
                    f"Stage {ref} exports {len(producer.outputs)} artifacts; reference one with stage/path"
                )
            return producer.artifact(producer.outputs[0])

        if isinstance(ref, dict) and 'stage' in ref and 'path' in ref:
            producer = by_name.get(ref['stage'])
            if producer is None:
                raise PipelineDefinitionError(
                    f"Stage {consumer} uses artifact of {ref['stage']}, which is not defined before it"
                )
            return producer.artifact(ref['path'])

        raise PipelineDefinitionError(f"Stage {consumer}: invalid artifact reference {ref!r}")

    @staticmethod
    def _process_stage(stage_dict: Dict[str, Any], pipeline_name: str) -> Stage:
        label = stage_dict.get('name', '<unnamed>')
        instructions = []
        for index, instruction_dict in enumerate(stage_dict.get('instructions') or []):
            instructions.append(
                ConfigLoader._process_instruction(instruction_dict, f"{pipeline_name}/{label}#{index + 1}")
            )
        try:
            return Stage(
                name=stage_dict.get('name'),
                base_image=stage_dict.get('base_image'),
                instructions=tuple(instructions),
                outputs=tuple(stage_dict.get('outputs') or ()),
            )
        except (TypeError, ValueError) as e:
            raise PipelineDefinitionError(f"Pipeline {pipeline_name}: stage {label}: {e}") from e

    @staticmethod
    def _process_instruction(instruction_dict: Dict[str, Any], location: str):
        if not isinstance(instruction_dict, dict) or 'type' not in instruction_dict:
            raise PipelineDefinitionError(f"{location}: instruction must be a mapping with a 'type'")

        params = dict(instruction_dict)
        type_name = params.pop('type')
        try:
            instruction_cls = INSTRUCTION_CLASSES[InstructionType(type_name)]
        except ValueError:
            supported = ', '.join(t.value for t in InstructionType)
            raise PipelineDefinitionError(
                f"{location}: unknown instruction type {type_name!r}. Supported: {supported}"
            )

        try:
            return instruction_cls(**params)
        except (TypeError, ValueError) as e:
            raise PipelineDefinitionError(f"{location} ({type_name}): {e}") from e

    @staticmethod
    def validate_config(definition: PipelineDefinition, package_lock: Optional[Any] = None) -> List[str]:
        """
        Check a structurally valid definition for likely mistakes.

        Returns:
            List of human readable issues, empty when none were found
        """
        issues = []
        final = definition.final_stage

        switched = [i for i in final.instructions if isinstance(i, SwitchUser)]
        if not switched or switched[-1].name == 'root':
            issues.append(f"Final stage {final.name} runs as root")

        if not any(isinstance(i, (Entrypoint, Cmd)) for i in final.instructions):
            issues.append(f"Final stage {final.name} declares neither an entrypoint nor a command")

        for stage in definition.stages:
            for instruction in stage.instructions:
                if isinstance(instruction, CopyFile) and instruction.from_stage == stage.name:
                    issues.append(f"Stage {stage.name} copies from itself")
                if isinstance(instruction, InstallPackages) and package_lock is not None:
                    unlocked = package_lock.verify_request(instruction.packages)
                    if unlocked:
                        issues.append(
                            f"Stage {stage.name}: packages not in lock: {', '.join(unlocked)}"
                        )
        return issues
