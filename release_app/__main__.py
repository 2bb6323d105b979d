"""CLI entry point for the release pipeline."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from enum import IntEnum
from pathlib import Path
from typing import Any

import click

from .analyzer import SemanticReleaseAnalyzer
from .artifacts import FileArtifactStore
from .config import AppConfig, ArtifactConfig, parse_command
from .exceptions import ManifestShapeError, ScriptError
from .manifest import update_manifest_file
from .models import RunRecord, RunState, SemVer, StageName
from .obs import close_log_stream, init_log_stream
from .pipeline import ReleasePipeline, new_run_id, write_summary
from .stages import CommandStage
from .vcs import GitHubReleasePublisher

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOGGER = logging.getLogger("release_app")


class ExitCode(IntEnum):
    COMPLETE = 0
    ERROR = 1
    NO_RELEASE = 3
    VERIFICATION_FAILED = 4
    PUBLISH_FAILED = 5
    PARTIAL_FAILURE = 6
    MANIFEST_SHAPE = 7


_STATE_EXIT_CODES: dict[RunState, ExitCode] = {
    RunState.COMPLETE: ExitCode.COMPLETE,
    RunState.NO_OP: ExitCode.NO_RELEASE,
    RunState.REJECTED: ExitCode.VERIFICATION_FAILED,
    RunState.FAILED: ExitCode.PUBLISH_FAILED,
    RunState.PARTIAL_FAILURE: ExitCode.PARTIAL_FAILURE,
}


def exit_code_for(record: RunRecord, *, no_release_ok: bool = False) -> ExitCode:
    """Map a run's state to the process exit code.

    Non-terminal states (a single stage passed and later stages are pending)
    exit with ``COMPLETE``.
    """

    if record.state is RunState.NO_OP and no_release_ok:
        return ExitCode.COMPLETE
    return _STATE_EXIT_CODES.get(record.state, ExitCode.COMPLETE)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()), format=LOG_FORMAT, datefmt=LOG_DATEFMT
    )


def _echo_json(payload: dict[str, Any], *, indent: int | None = 2) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=indent))


def _parse_semver(ctx: click.Context, param: click.Parameter, value: str) -> SemVer:  # noqa: ARG001
    try:
        return SemVer.parse(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _write_github_output(path: str | None, record: RunRecord) -> None:
    """Expose run id and versions as step outputs for later CI jobs."""

    if not path:
        return
    decision = record.decision
    lines = [
        f"run_id={record.run_id}",
        f"state={record.state.value}",
        f"version={decision.next_version if decision and decision.next_version else ''}",
        f"previous={decision.previous_version if decision and decision.previous_version else ''}",
    ]
    with open(path, "a", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")


@click.group()
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Set the logging verbosity.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str) -> None:
    """Command-line interface for release_app."""

    _configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command("set-version")
@click.argument("version", callback=_parse_semver)
@click.option("--manifest", default="Cargo.toml", show_default=True, help="Manifest file to update.")
def set_version(version: SemVer, manifest: str) -> None:
    """Write VERSION into the manifest's single version declaration."""

    try:
        update_manifest_file(Path(manifest), version)
    except ManifestShapeError as exc:
        exc.log_error(LOGGER)
        raise SystemExit(int(ExitCode.MANIFEST_SHAPE)) from exc
    except FileNotFoundError as exc:
        LOGGER.error("Manifest not found: %s", manifest)
        raise SystemExit(int(ExitCode.ERROR)) from exc
    click.echo(str(version))


def pipeline_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every pipeline command."""

    options = [
        click.option("--manifest", default=None, help="Manifest file holding the version declaration [default: Cargo.toml]."),
        click.option("--store-dir", default=None, help="Artifact store shared between stages [default: .release/artifacts]."),
        click.option("--log-file", default="logs/release.jsonl", show_default=True, help="Structured JSONL run log."),
        click.option("--summary", default=None, help="Optional path for the machine-readable run summary."),
        click.option("--verify-cmd", default=None, help="Verification command [default: cargo test --release --all-features]."),
        click.option("--publish-cmd", default=None, help="Registry publish command [default: cargo publish --allow-dirty]."),
        click.option("--analyzer-cmd", default=None, help="Commit analyzer command [default: npx semantic-release --dry-run]."),
        click.option("--repo", default=None, help="GitHub repository owner/name [env: GITHUB_REPOSITORY]."),
        click.option("--workdir", default=".", show_default=True, help="Checkout the stages run in."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _load_config(options: dict[str, Any]) -> AppConfig:
    config = AppConfig.from_env()
    if options.get("manifest"):
        config.manifest.path = Path(options["manifest"])
    if options.get("store_dir"):
        config.artifacts.store_dir = Path(options["store_dir"])
    if options.get("verify_cmd"):
        config.verify.command = parse_command(options["verify_cmd"])
    if options.get("publish_cmd"):
        config.registry.command = parse_command(options["publish_cmd"])
    if options.get("analyzer_cmd"):
        config.analyzer.command = parse_command(options["analyzer_cmd"])
    if options.get("repo"):
        config.vcs.repo = options["repo"]
    workdir = Path(options.get("workdir") or ".")
    config.verify.workdir = workdir
    config.registry.workdir = workdir
    return config


def build_pipeline(
    config: AppConfig,
    stages: set[StageName],
    *,
    log_event: Any = None,
) -> ReleasePipeline:
    """Wire the configured collaborators for the requested stages only."""

    analyzer = SemanticReleaseAnalyzer(
        config.analyzer.command, timeout=config.analyzer.timeout, cwd=str(config.verify.workdir)
    )
    verifier = None
    vcs_publisher = None
    registry_publisher = None
    if StageName.VERIFY in stages:
        verifier = CommandStage(
            "verify", config.verify.command, workdir=config.verify.workdir, timeout=config.verify.timeout
        )
    if StageName.PUBLISH_VCS in stages:
        vcs_publisher = GitHubReleasePublisher(config.vcs, target_commitish=config.vcs.target_commitish)
    if StageName.PUBLISH_REGISTRY in stages:
        registry_publisher = CommandStage(
            "publish-registry",
            config.registry.command,
            workdir=config.registry.workdir,
            timeout=config.registry.timeout,
            env=config.registry.command_env(),
        )
    return ReleasePipeline(
        analyzer=analyzer,
        manifest_path=config.verify.workdir / config.manifest.path,
        store=FileArtifactStore(config.artifacts.store_dir),
        verifier=verifier,
        vcs_publisher=vcs_publisher,
        registry_publisher=registry_publisher,
        log_event=log_event,
        workdir=config.verify.workdir,
    )


def _execute(
    options: dict[str, Any],
    stages: set[StageName],
    action: Callable[[ReleasePipeline], RunRecord],
    *,
    no_release_ok: bool = False,
    github_output: str | None = None,
) -> None:
    log_event = init_log_stream(Path(options["log_file"]))
    try:
        config = _load_config(options)
        pipeline = build_pipeline(config, stages, log_event=log_event)
        record = action(pipeline)
    except ManifestShapeError as exc:
        exc.log_error(LOGGER)
        raise SystemExit(int(ExitCode.MANIFEST_SHAPE)) from exc
    except ScriptError as exc:
        exc.log_error(LOGGER)
        raise SystemExit(int(ExitCode.ERROR)) from exc
    finally:
        close_log_stream(log_event)

    if options.get("summary"):
        write_summary(Path(options["summary"]), record)
    _write_github_output(github_output, record)
    _echo_json(record.to_dict())
    code = exit_code_for(record, no_release_ok=no_release_ok)
    if code is not ExitCode.COMPLETE:
        raise SystemExit(int(code))


_ALL_STAGES = {StageName.VERIFY, StageName.PUBLISH_VCS, StageName.PUBLISH_REGISTRY}


@cli.command()
@pipeline_options
@click.option("--run-id", default=None, help="Run identifier (generated when omitted).")
@click.option(
    "--no-release-ok/--no-release-fails",
    default=False,
    show_default=True,
    help="Exit 0 instead of 3 when no release is needed.",
)
def run(run_id: str | None, no_release_ok: bool, **options: Any) -> None:
    """Analyze, write, verify and publish in one process."""

    _execute(options, _ALL_STAGES, lambda p: p.run(run_id), no_release_ok=no_release_ok)


@cli.command("dry-run")
@pipeline_options
@click.option("--run-id", default=None, help="Run identifier (generated when omitted).")
@click.option("--github-output", envvar="GITHUB_OUTPUT", default=None, help="Append step outputs to this file.")
@click.option("--no-release-ok/--no-release-fails", default=False, show_default=True)
def dry_run(run_id: str | None, github_output: str | None, no_release_ok: bool, **options: Any) -> None:
    """Decide the next version, write the manifest and store the artifact."""

    _execute(
        options,
        set(),
        lambda p: p.run_stage(run_id or new_run_id(), StageName.DRY_RUN),
        no_release_ok=no_release_ok,
        github_output=github_output,
    )


def _stage_command(name: str, stage: StageName, help_text: str) -> None:
    @cli.command(name, help=help_text)
    @pipeline_options
    @click.option("--run-id", required=True, help="Run identifier from the dry-run stage.")
    def _command(run_id: str, **options: Any) -> None:
        _execute(options, {stage}, lambda p: p.run_stage(run_id, stage))


_stage_command("verify", StageName.VERIFY, "Run the test suite against the stored artifact.")
_stage_command("publish-vcs", StageName.PUBLISH_VCS, "Create the GitHub release for a verified run.")
_stage_command("publish-registry", StageName.PUBLISH_REGISTRY, "Upload the package for a run with a GitHub release.")


@cli.command()
@pipeline_options
@click.option("--run-id", required=True, help="Run that ended in PartialFailure.")
def resume(run_id: str, **options: Any) -> None:
    """Retry only the registry publish of a PartialFailure run."""

    _execute(options, {StageName.PUBLISH_REGISTRY}, lambda p: p.resume(run_id))


def _artifact_settings(store_dir: str | None) -> ArtifactConfig:
    try:
        settings = AppConfig.from_env().artifacts
    except ScriptError as exc:
        exc.log_error(LOGGER)
        raise SystemExit(int(ExitCode.ERROR)) from exc
    if store_dir:
        settings.store_dir = Path(store_dir)
    return settings


@cli.command()
@click.option("--run-id", required=True)
@click.option("--store-dir", default=None, help="Artifact store [default: $RELEASE_STORE_DIR or .release/artifacts].")
def show(run_id: str, store_dir: str | None) -> None:
    """Print the persisted record of a run."""

    settings = _artifact_settings(store_dir)
    try:
        record = FileArtifactStore(settings.store_dir).load_record(run_id)
    except ScriptError as exc:
        exc.log_error(LOGGER)
        raise SystemExit(int(ExitCode.ERROR)) from exc
    _echo_json(record.to_dict())


@cli.command()
@click.option("--store-dir", default=None, help="Artifact store [default: $RELEASE_STORE_DIR or .release/artifacts].")
@click.option(
    "--retention-days",
    type=click.IntRange(min=0),
    default=None,
    help="Keep runs younger than this [default: $RELEASE_RETENTION_DAYS or 1].",
)
def prune(store_dir: str | None, retention_days: int | None) -> None:
    """Delete expired run artifacts."""

    settings = _artifact_settings(store_dir)
    if retention_days is not None:
        settings.retention_days = retention_days
    removed = FileArtifactStore(settings.store_dir).prune(settings.retention_days)
    _echo_json({"removed": removed})


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
