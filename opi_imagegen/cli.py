"""Thin CLI wrapper for opi_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from opi_imagegen import __version__
from opi_imagegen.config import Settings, load_settings, print_settings_json
from opi_imagegen.errors import BuildError
from opi_imagegen.image.bootloader import write_flash_script
from opi_imagegen.image.layout import DEFAULT_LAYOUT, LAYOUTS, SECTOR_SIZE, get_layout
from opi_imagegen.logs import setup_logging, teardown_logging
from opi_imagegen.pipeline.controller import PipelineReport
from opi_imagegen.pipeline.stages import run_build
from opi_imagegen.process.cancel import CancellationToken

app = typer.Typer(
    name="opi-imagegen",
    help="Orange Pi 5 Plus image generator - build kernel, U-Boot, rootfs and disk images",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"opi-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Orange Pi 5 Plus image generator."""


def _load(build_file: Path | None, **overrides: Any) -> Settings:
    """Load settings, turning configuration errors into exit code 1."""
    try:
        return load_settings(build_file, **overrides)
    except FileNotFoundError:
        console.print(f"[red]Build file not found: {build_file}[/red]")
        raise typer.Exit(code=1) from None
    except yaml.YAMLError as e:
        console.print(f"[red]Invalid YAML in {build_file}: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        console.print("[red]Invalid configuration:[/red]")
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "(settings)"
            console.print(f"  {field}: {escape(err['msg'])}")
        raise typer.Exit(code=1) from None
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    build_file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="YAML build file"),
    ] = None,
) -> None:
    """Show effective configuration."""
    settings = _load(build_file)
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Toolchain:[/bold]")
    console.print(f"  Architecture:        {settings.arch}")
    console.print(f"  Cross compile:       {settings.cross_compile}")
    console.print(f"  Parallel jobs:       {settings.jobs}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Build directory:     {settings.build_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Rootfs directory:    {settings.rootfs_dir}")
    console.print(f"  Mount point:         {settings.mount_dir}")
    console.print()
    console.print("[bold]Sources:[/bold]")
    console.print(f"  Kernel:              {settings.kernel_git_url} ({settings.kernel_branch})")
    console.print(f"  U-Boot:              {settings.uboot_git_url} ({settings.uboot_branch})")
    console.print()
    console.print("[bold]Image:[/bold]")
    console.print(f"  Size:                {settings.image_size_mb} MB")
    console.print(f"  Layout:              {settings.target_layout}")
    console.print(f"  Compression level:   {settings.compression_level}")
    console.print()
    console.print("[bold]Components:[/bold]")
    console.print(f"  Kernel:              {settings.build_kernel}")
    console.print(f"  U-Boot:              {settings.build_uboot}")
    console.print(f"  Rootfs:              {settings.build_rootfs}")
    console.print(f"  GPU blobs:           {settings.install_gpu_blobs}")
    console.print(f"  Vulkan:              {settings.enable_vulkan}")
    console.print(f"  Create image:        {settings.create_image}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Continue on error:   {settings.continue_on_error}")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Log file:            {settings.log_file}")
    console.print(f"  Error log file:      {settings.error_log_file}")


@app.command()
def layout(
    target: Annotated[
        str,
        typer.Option("--target", "-t", help=f"Layout name ({', '.join(LAYOUTS)})"),
    ] = DEFAULT_LAYOUT,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a partition layout."""
    try:
        part_layout = get_layout(target)
    except BuildError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps(part_layout.to_dict(), indent=2))
        return

    table = Table(title=f"{part_layout.name}: {part_layout.description}")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("FS")
    table.add_column("Type")
    table.add_column("Boot")
    for part in part_layout.partitions:
        sectors = part.size_sectors
        size = f"{sectors * SECTOR_SIZE // 1024} KiB" if sectors else "rest"
        table.add_row(
            str(part.number),
            part.name,
            str(part.start_sector),
            str(part.end_sector) if part.end_sector is not None else "end",
            size,
            part.filesystem or "-",
            part.type_code,
            "yes" if part.boot_flag else "",
        )
    console.print(table)
    console.print("[bold]Raw bootloader writes:[/bold]")
    for placement in part_layout.all_placements():
        console.print(f"  {placement.filename} at sector {placement.start_sector}")


def _print_report(report: PipelineReport, settings: Settings) -> None:
    for record in report.records:
        color = {"success": "green", "soft_fail": "yellow"}.get(record.result.value, "red")
        suffix = " (downgraded)" if record.downgraded else ""
        console.print(
            f"  [{color}]{record.result.value:<10}[/{color}] {record.name}"
            f" ({record.duration_s:.1f}s){suffix}"
        )
    error = report.abort_error
    if error is not None:
        console.print()
        console.print(
            f"[red]Failed at stage {report.failed_stage}: "
            f"{escape(f'[{error.code.value}] {error.message}')}[/red]"
        )
        console.print(f"Error log: {settings.error_log_file}")


def _execute(settings: Settings, json_output: bool, image_only: bool) -> None:
    """Run a pipeline with logging and signal handling, then exit."""
    setup_logging(settings, console=console)
    token = CancellationToken()
    token.install_signal_handlers()
    try:
        report, context = run_build(settings, token=token, image_only=image_only)
    finally:
        token.restore_signal_handlers()
        teardown_logging()

    image = context.image_result
    if json_output:
        output = report.to_dict()
        if image is not None:
            output["image"] = image.to_dict()
        console.print(json.dumps(output, indent=2))
    else:
        console.print()
        console.print(f"[bold]Build {report.state.value}:[/bold]")
        _print_report(report, settings)
        if image is not None and image.finalized is not None:
            console.print()
            console.print(f"[green]Image: {image.finalized.image_path}[/green]")
            console.print(f"  SHA-256: {image.finalized.sha256}")

    if report.cancelled:
        raise typer.Exit(code=token.exit_code)
    if not report.success:
        raise typer.Exit(code=1)


@app.command()
def build(
    build_file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="YAML build file"),
    ] = None,
    kernel: Annotated[
        bool | None,
        typer.Option("--kernel/--no-kernel", help="Build the kernel"),
    ] = None,
    uboot: Annotated[
        bool | None,
        typer.Option("--uboot/--no-uboot", help="Build U-Boot"),
    ] = None,
    rootfs: Annotated[
        bool | None,
        typer.Option("--rootfs/--no-rootfs", help="Bootstrap the root filesystem"),
    ] = None,
    gpu: Annotated[
        bool | None,
        typer.Option("--gpu/--no-gpu", help="Install Mali GPU blobs"),
    ] = None,
    vulkan: Annotated[
        bool | None,
        typer.Option("--vulkan/--no-vulkan", help="Configure Vulkan"),
    ] = None,
    image: Annotated[
        bool | None,
        typer.Option("--image/--no-image", help="Assemble the disk image"),
    ] = None,
    continue_on_error: Annotated[
        bool | None,
        typer.Option(
            "--continue-on-error/--stop-on-error",
            help="Downgrade stage failures instead of aborting",
        ),
    ] = None,
    image_size: Annotated[
        int | None,
        typer.Option("--image-size", help="Image size in MB"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", help="Parallel make jobs"),
    ] = None,
    offline: Annotated[
        bool | None,
        typer.Option("--offline/--online", help="Skip package manager network access"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run the full build pipeline.

    Stages run in a fixed order; disabled components are skipped.
    Exit code is 0 on success, 1 on failure and 128+signal when cancelled.
    """
    settings = _load(
        build_file,
        build_kernel=kernel,
        build_uboot=uboot,
        build_rootfs=rootfs,
        install_gpu_blobs=gpu,
        enable_vulkan=vulkan,
        create_image=image,
        continue_on_error=continue_on_error,
        image_size_mb=image_size,
        jobs=jobs,
        offline=offline,
    )
    _execute(settings, json_output, image_only=False)


@app.command("image")
def image_cmd(
    build_file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="YAML build file"),
    ] = None,
    image_size: Annotated[
        int | None,
        typer.Option("--image-size", help="Image size in MB"),
    ] = None,
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Partition layout"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Assemble a disk image from previously built artifacts."""
    settings = _load(build_file, image_size_mb=image_size, target_layout=target)
    _execute(settings, json_output, image_only=True)


@app.command("flash-script")
def flash_script(
    output_dir: Annotated[
        Path,
        typer.Argument(help="Directory holding the bootloader blobs"),
    ],
    target: Annotated[
        str,
        typer.Option("--target", "-t", help="Partition layout"),
    ] = DEFAULT_LAYOUT,
) -> None:
    """Write the bootloader flash helper script."""
    try:
        script = write_flash_script(output_dir, get_layout(target))
    except BuildError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    except OSError as e:
        console.print(f"[red]Failed to write flash script: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    console.print(f"[green]Flash script written: {script}[/green]")


if __name__ == "__main__":
    app()
