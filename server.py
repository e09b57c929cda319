#!/usr/bin/env python3
"""
MLT Proxy MCP Server: proxy media management for MLT (Shotcut, melt) projects.

Provides tools to inspect the proxy cache, build and schedule proxy jobs,
and rewrite saved projects so they reference original media, plus MCP
resources for project discovery and a prompt workflow for sharing a project.
"""

from __future__ import annotations

import logging
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Sequence

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    GetPromptResult,
    Prompt,
    PromptArgument,
    PromptMessage,
    Resource,
    TextContent,
    Tool,
)

from mltproxy.actions import FinalizeAction
from mltproxy.config import ProxySettings
from mltproxy.descriptor import build_image_args, build_video_args, is_full_range
from mltproxy.errors import ProxyError
from mltproxy.jobs import SubprocessJobQueue
from mltproxy.locator import clear_pending, locate, media_kind
from mltproxy.manager import ProxyManager
from mltproxy.models import JobOutcome, MediaKind, ProxyState, ScanMode
from mltproxy.parser import MLTParser
from mltproxy.rewriter import rewrite_document

logger = logging.getLogger("mlt-proxy-mcp-server")

server = Server("mlt-proxy-mcp-server")
PROJECTS_DIR = os.environ.get("MLTPROXY_PROJECTS_DIR", os.path.expanduser("~/Videos"))

# Maximum file size for parsing (100 MB).
MAX_FILE_SIZE = 100 * 1024 * 1024

PROJECT_EXTENSIONS = ('.mlt',)
PROXY_EXTENSIONS = ('.mp4', '.jpg')

_job_queue: SubprocessJobQueue | None = None


# ============================================================================
# SECURITY UTILITIES
# ============================================================================

def _validate_filepath(filepath: str, allowed_extensions: tuple[str, ...] | None = None) -> str:
    """Validate a user-provided file path against traversal and size attacks.

    Resolves symlinks, blocks null bytes, enforces extension whitelist, and
    checks file size before any parsing takes place.

    Raises:
        ValueError: For invalid paths (null bytes, bad extensions, oversized).
        FileNotFoundError: When the resolved path does not exist.
    """
    if '\x00' in filepath:
        raise ValueError("Invalid file path: null byte detected")

    resolved = Path(filepath).resolve()

    if not resolved.exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    if not resolved.is_file():
        raise ValueError(f"Not a regular file: {filepath}")

    if allowed_extensions and resolved.suffix.lower() not in allowed_extensions:
        raise ValueError(
            f"Invalid file type '{resolved.suffix}'. "
            f"Allowed: {', '.join(allowed_extensions)}"
        )

    if resolved.stat().st_size > MAX_FILE_SIZE:
        size_mb = resolved.stat().st_size / (1024 * 1024)
        raise ValueError(f"File too large ({size_mb:.1f} MB). Maximum: {MAX_FILE_SIZE // (1024 * 1024)} MB")

    return str(resolved)


def _validate_output_path(output_path: str) -> str:
    """Validate an output path: resolve traversal, block null bytes, ensure parent exists."""
    if '\x00' in output_path:
        raise ValueError("Invalid output path: null byte detected")

    resolved = Path(output_path).resolve()

    if not resolved.parent.exists():
        raise ValueError(f"Output directory does not exist: {resolved.parent}")

    return str(resolved)


def _validate_directory(directory: str) -> str:
    """Validate a user-provided directory path against traversal and injection.

    Raises:
        ValueError: For invalid paths (null bytes, not a directory).
    """
    if '\x00' in directory:
        raise ValueError("Invalid directory path: null byte detected")

    resolved = Path(directory).resolve()

    if not resolved.is_dir():
        raise ValueError(f"Not a valid directory: {directory}")

    return str(resolved)


def _validate_identity(identity: str) -> str:
    """A clip identity becomes a file name; reject anything path-like."""
    if not identity or any(c in identity for c in ('/', '\\', '\x00')) or identity in ('.', '..'):
        raise ValueError(f"Invalid clip identity: '{identity}'")
    return identity


# ============================================================================
# UTILITIES
# ============================================================================

def find_mlt_files(directory: str) -> list[str]:
    """Find all MLT project files in a directory."""
    path = Path(directory)
    return sorted(str(f) for f in path.rglob("*.mlt"))


def generate_output_path(input_path: str, suffix: str = "_original") -> str:
    """Generate output path from input path."""
    p = Path(input_path)
    return str(p.parent / f"{p.stem}{suffix}{p.suffix}")


def _settings(arguments: dict | None = None) -> ProxySettings:
    settings = ProxySettings.from_env()
    if arguments and arguments.get("preview_scale") is not None:
        scale = int(arguments["preview_scale"])
        if scale < 0:
            raise ValueError(f"preview_scale must not be negative: {scale}")
        settings = settings.with_overrides(preview_scale=scale)
    return settings


def _project_folder(arguments: dict, filepath: str | None = None) -> str | None:
    folder = arguments.get("project_folder")
    if folder:
        return _validate_directory(folder)
    if filepath:
        return str(Path(filepath).parent)
    return None


def _queue() -> SubprocessJobQueue:
    global _job_queue
    if _job_queue is None:
        _job_queue = SubprocessJobQueue(max_workers=1)
    return _job_queue


def _parse_project(filepath: str):
    """Parse an MLT file and return the validated path and its media graph."""
    filepath = _validate_filepath(filepath, PROJECT_EXTENSIONS)
    return filepath, MLTParser().parse_file(filepath)


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


# ============================================================================
# MCP RESOURCES: file discovery
# ============================================================================

@server.list_resources()
async def list_resources() -> list[Resource]:
    """Expose discovered MLT projects as MCP resources."""
    resources = []
    for f in find_mlt_files(PROJECTS_DIR):
        p = Path(f)
        resources.append(Resource(
            uri=f"file://{f}",
            name=p.stem,
            description=f"MLT project: {p.name}",
            mimeType="application/xml",
        ))
    return resources


@server.read_resource()
async def read_resource(uri: str) -> str:
    """Read an MLT project and return a proxy summary."""
    filepath = str(uri).replace("file://", "")
    try:
        filepath, graph = _parse_project(filepath)
    except (ValueError, FileNotFoundError) as e:
        return str(e)

    producers = list(graph.producers())
    proxies = [p for p in producers if p.is_proxy]
    return f"""MLT Project: {Path(filepath).stem}
Services: {len(graph.services)}
Producers: {len(producers)}
Using proxies: {len(proxies)}
Path: {filepath}"""


# ============================================================================
# MCP PROMPTS: pre-built workflows
# ============================================================================

@server.list_prompts()
async def list_prompts() -> list[Prompt]:
    return [
        Prompt(
            name="prepare-for-sharing",
            description="Make sure a project references original media before sending it to someone else",
            arguments=[
                PromptArgument(name="filepath", description="Path to MLT project", required=True),
            ],
        ),
        Prompt(
            name="warm-proxy-cache",
            description="Generate proxies for every large clip in a project",
            arguments=[
                PromptArgument(name="filepath", description="Path to MLT project", required=True),
            ],
        ),
    ]


@server.get_prompt()
async def get_prompt(name: str, arguments: dict[str, str] | None = None) -> GetPromptResult:
    args = arguments or {}
    filepath = args.get("filepath", "<path to your .mlt file>")

    if name == "prepare-for-sharing":
        return GetPromptResult(
            description="Swap proxies back to original media",
            messages=[PromptMessage(
                role="user",
                content=TextContent(
                    type="text",
                    text=f"""Prepare my project for sharing.

File: {filepath}

Please:
1. Use `list_proxy_candidates` to see which clips currently use proxies
2. Use `rewrite_project` to write a copy that references the original media
3. Tell me where the rewritten project was saved"""
                ),
            )],
        )

    elif name == "warm-proxy-cache":
        return GetPromptResult(
            description="Pre-generate proxies",
            messages=[PromptMessage(
                role="user",
                content=TextContent(
                    type="text",
                    text=f"""Generate proxies for my project.

File: {filepath}

Please:
1. Use `list_proxy_candidates` to show which clips have no proxy yet
2. Use `generate_proxies` to schedule the missing ones
3. Summarize how many jobs were started"""
                ),
            )],
        )

    raise ValueError(f"Unknown prompt: {name}")


# ============================================================================
# TOOL DEFINITIONS
# ============================================================================

@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="list_projects",
            description="List all MLT projects in directory",
            inputSchema={
                "type": "object",
                "properties": {
                    "directory": {"type": "string", "description": "Directory to search (default: ~/Videos)"}
                }
            }
        ),
        Tool(
            name="list_proxy_candidates",
            description="List producers that do not use a proxy yet, with media kind and cache state",
            inputSchema={
                "type": "object",
                "properties": {
                    "filepath": {"type": "string", "description": "Path to MLT file"},
                    "project_folder": {"type": "string", "description": "Project folder (default: folder of the file)"}
                },
                "required": ["filepath"]
            }
        ),
        Tool(
            name="locate_proxy",
            description="Report whether the proxy for a clip identity is absent, pending or ready",
            inputSchema={
                "type": "object",
                "properties": {
                    "identity": {"type": "string", "description": "Clip identity hash"},
                    "kind": {"type": "string", "enum": ["video", "image"]},
                    "project_folder": {"type": "string"}
                },
                "required": ["identity", "kind"]
            }
        ),
        Tool(
            name="build_proxy_command",
            description="Show the ffmpeg/melt command that would make the proxy for one producer (nothing is run)",
            inputSchema={
                "type": "object",
                "properties": {
                    "filepath": {"type": "string"},
                    "producer_id": {"type": "string"},
                    "scan_mode": {"type": "string", "enum": ["automatic", "progressive", "tff", "bff"]},
                    "preview_scale": {"type": "integer", "description": "Proxy height (default: MLTPROXY_PREVIEW_SCALE or 540)"},
                    "project_folder": {"type": "string"}
                },
                "required": ["filepath", "producer_id"]
            }
        ),
        Tool(
            name="generate_proxies",
            description="Schedule proxy generation for every producer of a project that has none",
            inputSchema={
                "type": "object",
                "properties": {
                    "filepath": {"type": "string"},
                    "preview_scale": {"type": "integer", "description": "Proxy height (default: MLTPROXY_PREVIEW_SCALE or 540)"},
                    "project_folder": {"type": "string"}
                },
                "required": ["filepath"]
            }
        ),
        Tool(
            name="rewrite_project",
            description="Write a copy of a project with proxy resources replaced by the original media",
            inputSchema={
                "type": "object",
                "properties": {
                    "filepath": {"type": "string"},
                    "root": {"type": "string", "description": "Folder original paths are made relative to (default: folder of the file)"},
                    "output_path": {"type": "string"}
                },
                "required": ["filepath"]
            }
        ),
        Tool(
            name="finalize_proxy",
            description="Promote a finished .pending proxy file to its ready name",
            inputSchema={
                "type": "object",
                "properties": {"pending_path": {"type": "string"}},
                "required": ["pending_path"]
            }
        ),
        Tool(
            name="clear_pending_proxy",
            description="Delete a stale pending marker so the proxy can be generated again",
            inputSchema={
                "type": "object",
                "properties": {
                    "identity": {"type": "string"},
                    "kind": {"type": "string", "enum": ["video", "image"]},
                    "project_folder": {"type": "string"}
                },
                "required": ["identity", "kind"]
            }
        ),
    ]


# ============================================================================
# TOOL HANDLERS: one function per tool
# ============================================================================

async def handle_list_projects(arguments: dict) -> Sequence[TextContent]:
    directory = arguments.get("directory", PROJECTS_DIR)
    resolved_dir = _validate_directory(directory)
    files = find_mlt_files(resolved_dir)
    if not files:
        return _text(f"No MLT files found in {directory}")
    return _text(f"Found {len(files)} MLT file(s):\n" + "\n".join(f"  - {f}" for f in files))


async def handle_list_proxy_candidates(arguments: dict) -> Sequence[TextContent]:
    filepath, graph = _parse_project(arguments["filepath"])
    manager = ProxyManager(_settings(), _queue(), _project_folder(arguments, filepath))
    producers = [p for p in graph.producers() if not p.is_proxy]
    if not producers:
        return _text("All producers already use proxies")
    result = "| # | Producer | Kind | Service | State | Resource |\n|---|----------|------|---------|-------|----------|\n"
    for i, p in enumerate(producers, 1):
        kind = media_kind(p)
        record = manager.locate(p)
        state = record.state.value if record else "-"
        result += f"| {i} | {p.id} | {kind.value if kind else '-'} | {p.service} | {state} | {manager.resource(p)} |\n"
    return _text(result)


async def handle_locate_proxy(arguments: dict) -> Sequence[TextContent]:
    identity = _validate_identity(arguments["identity"])
    kind = MediaKind.from_string(arguments["kind"])
    record = locate(identity, kind, _settings(), _project_folder(arguments))
    lines = [f"State: {record.state.value}"]
    if record.state == ProxyState.READY:
        lines.append(f"Proxy: {record.ready_path}")
    elif record.state == ProxyState.PENDING:
        lines.append(f"Pending: {record.pending_path}")
    else:
        lines.append(f"Would be written to: {record.pending_path}")
    return _text("\n".join(lines))


async def handle_build_proxy_command(arguments: dict) -> Sequence[TextContent]:
    filepath, graph = _parse_project(arguments["filepath"])
    producer_id = arguments["producer_id"]
    clip = graph.services.get(producer_id)
    if clip is None:
        raise ValueError(f"Producer not found: {producer_id}")
    kind = media_kind(clip)
    if kind is None:
        return _text(f"Producer {producer_id} ({clip.service or 'unknown service'}) cannot have a proxy")
    settings = _settings(arguments)
    manager = ProxyManager(settings, _queue(), _project_folder(arguments, filepath))
    identity = manager.identify(clip)
    if not identity:
        return _text(f"Producer {producer_id} has no stored identity hash")
    pending = manager.dir() / (identity + kind.pending_suffix)
    resource = manager.resource(clip)
    if kind == MediaKind.VIDEO:
        scan_mode = ScanMode(arguments.get("scan_mode", "automatic"))
        argv = ["ffmpeg"] + build_video_args(clip, resource, pending, settings,
                                             is_full_range(clip), scan_mode)
    else:
        argv = ["melt"] + build_image_args(clip, resource, pending, settings)
    return _text(f"```sh\n{shlex.join(argv)}\n```")


async def handle_generate_proxies(arguments: dict) -> Sequence[TextContent]:
    filepath, graph = _parse_project(arguments["filepath"])
    if graph.root is None:
        return _text("No services found")
    manager = ProxyManager(_settings(arguments), _queue(), _project_folder(arguments, filepath))
    clips = manager.generate_if_not_exists_all(graph.root)
    result = f"Scanned {len(clips)} producer(s), started {len(manager.submitted)} proxy job(s)"
    if manager.submitted:
        result += "\n" + "\n".join(f"  - {r.label}: {r.output_path}" for r in manager.submitted)
    return _text(result)


async def handle_rewrite_project(arguments: dict) -> Sequence[TextContent]:
    filepath = _validate_filepath(arguments["filepath"], PROJECT_EXTENSIONS)
    output_path = _validate_output_path(
        arguments.get("output_path") or generate_output_path(filepath)
    )
    root = arguments.get("root") or str(Path(filepath).parent)
    temp_path = rewrite_document(filepath, root)
    if temp_path is None:
        return _text(f"Could not rewrite {filepath}: the document is not valid MLT XML")
    os.replace(temp_path, output_path)
    return _text(f"Rewrote proxy resources to originals\n\nSaved to: {output_path}")


async def handle_finalize_proxy(arguments: dict) -> Sequence[TextContent]:
    pending = _validate_filepath(arguments["pending_path"], PROXY_EXTENSIONS)
    action = FinalizeAction(pending)
    if not action.on_complete(JobOutcome(success=True)):
        return _text(f"Could not finalize {pending}")
    return _text(f"Proxy ready: {action.ready_path}")


async def handle_clear_pending_proxy(arguments: dict) -> Sequence[TextContent]:
    identity = _validate_identity(arguments["identity"])
    kind = MediaKind.from_string(arguments["kind"])
    record = locate(identity, kind, _settings(), _project_folder(arguments))
    if not clear_pending(record):
        return _text(f"No pending marker for {identity} (state: {record.state.value})")
    return _text(f"Removed pending marker {record.pending_path}")


# ============================================================================
# TOOL DISPATCH
# ============================================================================

TOOL_HANDLERS = {
    # Read
    "list_projects": handle_list_projects,
    "list_proxy_candidates": handle_list_proxy_candidates,
    "locate_proxy": handle_locate_proxy,
    "build_proxy_command": handle_build_proxy_command,
    # Write
    "generate_proxies": handle_generate_proxies,
    "rewrite_project": handle_rewrite_project,
    # Maintenance
    "finalize_proxy": handle_finalize_proxy,
    "clear_pending_proxy": handle_clear_pending_proxy,
}


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> Sequence[TextContent]:
    handler = TOOL_HANDLERS.get(name)
    if not handler:
        return _text(f"Unknown tool: {name}")
    try:
        return await handler(arguments)
    except FileNotFoundError as e:
        return _text(f"File not found: {e}")
    except ValueError as e:
        return _text(f"Validation error: {e}")
    except ProxyError as e:
        return _text(f"Proxy error: {e}")
    except Exception as e:
        logger.exception("Error in tool %s", name)
        return _text(f"Error: {type(e).__name__}")


# ============================================================================
# MAIN
# ============================================================================

async def main():
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def main_sync():
    """Synchronous entry point for use as a console script."""
    import asyncio
    # stdout carries the MCP protocol
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    asyncio.run(main())


if __name__ == "__main__":
    main_sync()
