"""
CLI for validating, rendering and building container image pipelines.
"""
import asyncio
import click
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..build_backend import get_build_backend
from ..config.build import ImageBuildManager, PipelineScanner
from ..config.config_loader import ConfigLoader
from ..config.global_config_loader import GlobalConfig, load_global_config
from ..config.package_lock import PackageLock
from ..core.errors import ImageToolError
from ..core.models import InstallPackages, PipelineDefinition
from ..render import DockerfileRenderer


def _load_package_lock(global_cfg: GlobalConfig, lock_path: Optional[str] = None) -> Optional[PackageLock]:
    path = lock_path or global_cfg.build_system.package_lock
    if not path:
        return None
    try:
        return PackageLock.load_from_yaml(path)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Failed to load package lock {path}: {e}")


def _load_pipelines(
    global_cfg: GlobalConfig,
    files: Tuple[str, ...] = ()
) -> Tuple[Dict[str, PipelineDefinition], Dict[str, str], Dict[str, str]]:
    """
    Load definitions from explicit files, or from the configured pipelines
    directory plus the built-in catalog.

    Returns:
        (definitions by name, source by name, load errors by file)
    """
    if files:
        definitions, sources, errors = {}, {}, {}
        for file_path in files:
            try:
                definition = ConfigLoader.load_from_yaml(file_path)
            except (ImageToolError, OSError) as e:
                errors[file_path] = str(e)
                continue
            definitions[definition.name] = definition
            sources[definition.name] = file_path
        return definitions, sources, errors

    scanner = PipelineScanner(
        Path(global_cfg.build_system.pipelines_dir),
        include_catalog=global_cfg.build_system.include_catalog,
    )
    discovered = scanner.load_all()
    return (
        {name: p.definition for name, p in discovered.items()},
        {name: p.source for name, p in discovered.items()},
        dict(scanner.errors),
    )


def _select(definitions: Dict[str, PipelineDefinition], names: Tuple[str, ...]) -> Dict[str, PipelineDefinition]:
    if not names:
        return definitions
    missing = [n for n in names if n not in definitions]
    if missing:
        raise click.ClickException(
            f"Unknown pipeline(s): {', '.join(missing)}. Available: {', '.join(sorted(definitions))}"
        )
    return {n: definitions[n] for n in names}


def _create_manager(global_cfg: GlobalConfig, backend_type: str, package_lock, context_dir: Optional[str]) -> ImageBuildManager:
    try:
        backend = get_build_backend(backend_type, global_cfg.backend_config(), package_lock=package_lock)
    except ValueError as e:
        raise click.ClickException(f"Failed to create {backend_type} backend: {e}")
    return ImageBuildManager(
        backend=backend,
        state_dir=Path(global_cfg.build_system.state_dir),
        context_dir=Path(context_dir or global_cfg.build_system.context_dir),
        package_lock=package_lock,
        build_lock_timeout=global_cfg.build_system.build_lock_timeout,
        max_concurrent_pipelines=global_cfg.build_system.max_concurrent_pipelines,
    )


@click.group()
@click.option('--global-config', default=None, help='Path to global config YAML')
@click.option('--log-level', default=None,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
              help='Set the logging level (defaults to logging.level from the global config)')
@click.pass_context
def cli(ctx, global_config, log_level):
    """Build container images from staged pipeline definitions"""
    global_cfg = load_global_config(global_config) if global_config else load_global_config()

    level = (log_level or global_cfg.logging.level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=global_cfg.logging.format
    )

    ctx.ensure_object(dict)
    ctx.obj['global_config'] = global_cfg


@cli.command()
@click.argument('names', nargs=-1)
@click.option('--file', '-f', 'files', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Pipeline YAML file (repeatable); defaults to the pipelines directory')
@click.option('--package-lock', default=None, help='Package lock YAML to check package requests against')
@click.pass_context
def validate(ctx, names, files, package_lock):
    """Validate pipeline definitions"""
    global_cfg = ctx.obj['global_config']
    lock = _load_package_lock(global_cfg, package_lock)
    definitions, sources, errors = _load_pipelines(global_cfg, files)

    for path, error in errors.items():
        click.echo(f"❌ {path}: {error}", err=True)

    for name, definition in _select(definitions, names).items():
        issues = ConfigLoader.validate_config(definition, lock)
        stages = ' -> '.join(s.name for s in definition.stages)
        click.echo(f"✅ {name} ({sources.get(name)}): {stages} => {definition.tag}")
        for issue in issues:
            click.echo(f"   ⚠️  {issue}")

    if errors:
        raise click.ClickException(f"{len(errors)} pipeline file(s) failed to load")


@cli.command()
@click.argument('name')
@click.option('--file', '-f', 'files', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Pipeline YAML file (repeatable); defaults to the pipelines directory')
@click.option('--output', '-o', default=None, help='Write the Dockerfile here instead of stdout')
@click.option('--package-lock', default=None, help='Pin package versions from this lock')
@click.pass_context
def render(ctx, name, files, output, package_lock):
    """Render a pipeline as a multi-stage Dockerfile"""
    global_cfg = ctx.obj['global_config']
    lock = _load_package_lock(global_cfg, package_lock)
    definitions, _, _ = _load_pipelines(global_cfg, files)
    definition = _select(definitions, (name,))[name]

    try:
        text = DockerfileRenderer(package_lock=lock).render(definition)
    except ImageToolError as e:
        raise click.ClickException(str(e))

    if output:
        Path(output).write_text(text)
        click.echo(f"Wrote Dockerfile for {name} to {output}")
    else:
        click.echo(text, nl=False)


@cli.command()
@click.argument('names', nargs=-1)
@click.option('--file', '-f', 'files', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Pipeline YAML file (repeatable); defaults to the pipelines directory')
@click.option('--force', is_flag=True, help='Rebuild even if nothing changed')
@click.option('--backend', default=None, type=click.Choice(['docker', 'memory']),
              help='Build backend (defaults to build_system.backend)')
@click.option('--context-dir', default=None, help='Build context directory')
@click.option('--package-lock', default=None, help='Package lock YAML enforced during the build')
@click.option('--json', 'as_json', is_flag=True, help='Print the build report as JSON')
@click.pass_context
def build(ctx, names, files, force, backend, context_dir, package_lock, as_json):
    """Build changed pipelines (all, or the named ones)"""
    global_cfg = ctx.obj['global_config']
    logger = logging.getLogger(__name__)

    lock = _load_package_lock(global_cfg, package_lock)
    definitions, sources, errors = _load_pipelines(global_cfg, files)
    for path, error in errors.items():
        logger.error(f"Skipping {path}: {error}")
    selected = _select(definitions, names)

    try:
        manager = _create_manager(global_cfg, backend or global_cfg.build_system.backend, lock, context_dir)
        report = asyncio.run(manager.build(selected, force=force, sources=sources))
    except (ImageToolError, TimeoutError, ValueError) as e:
        logger.error(f"Build failed: {e}")
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        report.print_summary()

    if report.has_issues():
        raise click.ClickException(
            f"{len(report.failed)} pipeline(s) failed: "
            f"{', '.join(r.pipeline_name for r in report.failed)}"
        )


@cli.command()
@click.argument('names', nargs=-1)
@click.option('--file', '-f', 'files', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Pipeline YAML file (repeatable); defaults to the pipelines directory')
@click.pass_context
def status(ctx, names, files):
    """Show the build state of pipelines"""
    global_cfg = ctx.obj['global_config']
    lock = _load_package_lock(global_cfg)
    definitions, _, _ = _load_pipelines(global_cfg, files)
    manager = ImageBuildManager(
        backend=None,
        state_dir=Path(global_cfg.build_system.state_dir),
        package_lock=lock,
    )

    for row in manager.status(_select(definitions, names)):
        click.echo(f"{row['name']}: {row['state']}")
        click.echo(f"    Tag: {row['tag']}")
        if row['version'] is not None:
            click.echo(f"    Version: {row['version']} built {row['built_at']}")
            click.echo(f"    Image: {row['image_id']}")
        if row['changed_stages']:
            click.echo(f"    Changed stages: {', '.join(row['changed_stages'])}")


@cli.command('lock-check')
@click.argument('names', nargs=-1)
@click.option('--file', '-f', 'files', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Pipeline YAML file (repeatable); defaults to the pipelines directory')
@click.option('--package-lock', default=None, help='Package lock YAML (defaults to build_system.package_lock)')
@click.pass_context
def lock_check(ctx, names, files, package_lock):
    """Check that every requested system package is pinned in the package lock"""
    global_cfg = ctx.obj['global_config']
    lock = _load_package_lock(global_cfg, package_lock)
    if lock is None:
        raise click.ClickException("No package lock configured; pass --package-lock")

    definitions, _, _ = _load_pipelines(global_cfg, files)
    unpinned = 0
    for name, definition in _select(definitions, names).items():
        for stage in definition.stages:
            for instruction in stage.instructions:
                if not isinstance(instruction, InstallPackages):
                    continue
                missing = lock.verify_request(instruction.packages)
                unpinned += len(missing)
                if missing:
                    click.echo(f"❌ {name}/{stage.name}: not locked: {', '.join(missing)}")
                else:
                    pins = ', '.join(lock.pin(p) for p in instruction.packages)
                    click.echo(f"✅ {name}/{stage.name}: {pins}")

    if unpinned:
        raise click.ClickException(f"{unpinned} package request(s) are not pinned in the lock")
