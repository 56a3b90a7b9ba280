"""MCP Server for organization state snapshots and deployments.

Exposes the same engine as the statecraft CLI over MCP stdio.

Tools exposed:
- snapshot_list: List snapshots, newest first
- snapshot_create: Export live state as a new snapshot
- snapshot_show: Show a snapshot's metadata and counts
- diff_snapshots: Per-collection diff of two references
- promote: Deploy or roll back a snapshot (direct or scheduled)
- deployments_list: Filtered, paged deployment list
- deployment_get: One deployment record
- deployment_approve: Approve and run a deployment
- deployment_retry: Start a new deployment from a failed one
- deployment_reschedule: Move a scheduled deployment
- deployment_cancel: Cancel a scheduled or approved deployment
- deployment_delete: Remove a deployment record
- deployments_status: Counts by mode and status
- pull: Export live state into a state-set directory
- push: Import a state-set directory or bundle file
- validate_state_set: Check a state-set source
- get_audit_log: Recent audit records
"""
import asyncio
import json
import logging
import os
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .backends import create_backend
from .backends.base import StateBackend
from .bundle.canonical import compute_checksum
from .config.settings import Settings
from .engine.diff import summarize_diff
from .engine.orchestrator import DeploymentOrchestrator
from .engine.schema import DeploymentMode, DeploymentStatus, PromotionOptions
from .utils.audit_log import AUDIT_FILE, get_recent_operations, setup_audit_logging, summarize_records
from .utils.logging_config import setup_logging, timed_section

logger = logging.getLogger(__name__)

RESOURCE_SCHEME = "stateset://"

# Globals (initialized on first tool call)
settings: Optional[Settings] = None
backend: Optional[StateBackend] = None
orchestrator: Optional[DeploymentOrchestrator] = None


def get_settings() -> Settings:
    """Get or load the settings."""
    global settings
    if settings is None:
        settings = Settings.load(os.environ.get("STATECRAFT_CONFIG"))
    return settings


async def get_orchestrator() -> DeploymentOrchestrator:
    """Get or create the orchestrator, connecting the backend once."""
    global backend, orchestrator
    if orchestrator is None:
        cfg = get_settings()
        backend = create_backend(cfg)
        await backend.connect()
        orchestrator = DeploymentOrchestrator.from_settings(cfg, backend)
    return orchestrator


def _text(data: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _options(arguments: dict) -> PromotionOptions:
    return PromotionOptions(
        dry_run=arguments.get("dry_run", False),
        yes=arguments.get("yes", False),
        strict=arguments.get("strict", False),
        include_secrets=arguments.get("include_secrets", False),
    )


# Create MCP server
server = Server("mcp-stateset")


_PROMOTION_FLAGS = {
    "dry_run": {
        "type": "boolean",
        "description": "Preview only; never apply",
        "default": False
    },
    "yes": {
        "type": "boolean",
        "description": "Apply after a successful preview",
        "default": False
    },
    "strict": {
        "type": "boolean",
        "description": "Fail when any entity fails to import",
        "default": False
    },
    "include_secrets": {
        "type": "boolean",
        "description": "Do not redact secrets in live exports",
        "default": False
    },
}

_DEPLOYMENT_REF = {
    "deployment_id": {
        "type": "string",
        "description": "Deployment id, or a unique substring of an id or source"
    }
}


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="snapshot_list",
            description="List stored snapshots, most recently modified first",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Only snapshots whose name contains this text"
                    }
                },
                "required": []
            }
        ),
        Tool(
            name="snapshot_create",
            description="Export live organization state and store it as a snapshot",
            inputSchema={
                "type": "object",
                "properties": {
                    "label": {
                        "type": "string",
                        "description": "Label embedded in the snapshot file name"
                    },
                    "include_secrets": _PROMOTION_FLAGS["include_secrets"],
                },
                "required": []
            }
        ),
        Tool(
            name="snapshot_show",
            description="Show metadata and per-collection counts for a snapshot",
            inputSchema={
                "type": "object",
                "properties": {
                    "ref": {
                        "type": "string",
                        "description": "Snapshot id, prefix, path or 'latest' (default: latest)"
                    }
                },
                "required": []
            }
        ),
        Tool(
            name="diff_snapshots",
            description="Per-collection added/removed/changed counts between two references. "
                        "'latest' is the newest snapshot; 'current' is live state.",
            inputSchema={
                "type": "object",
                "properties": {
                    "from_ref": {
                        "type": "string",
                        "description": "Left side (default: latest)",
                        "default": "latest"
                    },
                    "to_ref": {
                        "type": "string",
                        "description": "Right side (default: current)",
                        "default": "current"
                    },
                    "include_secrets": _PROMOTION_FLAGS["include_secrets"],
                },
                "required": []
            }
        ),
        Tool(
            name="promote",
            description="Deploy or roll back a snapshot. A preview always runs first; "
                        "the import only applies with yes=true. With 'schedule' the "
                        "deployment is recorded for later approval instead.",
            inputSchema={
                "type": "object",
                "properties": {
                    "mode": {
                        "type": "string",
                        "enum": [m.value for m in DeploymentMode],
                        "description": "deploy or rollback"
                    },
                    "ref": {
                        "type": "string",
                        "description": "Snapshot reference, 'latest' or 'current'"
                    },
                    "schedule": {
                        "type": "string",
                        "description": "When to run: now, +2h, -30m or ISO-8601"
                    },
                    **_PROMOTION_FLAGS,
                },
                "required": ["mode", "ref"]
            }
        ),
        Tool(
            name="deployments_list",
            description="List deployments, most recently updated first",
            inputSchema={
                "type": "object",
                "properties": {
                    "reference": {
                        "type": "string",
                        "description": "Only the deployment matching this reference"
                    },
                    "mode": {
                        "type": "string",
                        "enum": [m.value for m in DeploymentMode]
                    },
                    "status": {
                        "type": "string",
                        "enum": [s.value for s in DeploymentStatus]
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Page size (max 200)",
                        "default": 50
                    },
                    "offset": {
                        "type": "integer",
                        "default": 0
                    }
                },
                "required": []
            }
        ),
        Tool(
            name="deployment_get",
            description="Get one deployment record",
            inputSchema={
                "type": "object",
                "properties": {**_DEPLOYMENT_REF},
                "required": ["deployment_id"]
            }
        ),
        Tool(
            name="deployment_approve",
            description="Approve a scheduled deployment and run it now. "
                        "Unset flags fall back to the ones stored when scheduling.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_DEPLOYMENT_REF,
                    "source": {
                        "type": "string",
                        "description": "Override the snapshot reference"
                    },
                    "dry_run": {"type": "boolean"},
                    "strict": {"type": "boolean"},
                    "include_secrets": {"type": "boolean"},
                },
                "required": ["deployment_id"]
            }
        ),
        Tool(
            name="deployment_retry",
            description="Create a new deployment from a failed one and approve it",
            inputSchema={
                "type": "object",
                "properties": {
                    **_DEPLOYMENT_REF,
                    "source": {
                        "type": "string",
                        "description": "Override the snapshot reference"
                    },
                    "dry_run": {"type": "boolean"},
                    "strict": {"type": "boolean"},
                },
                "required": ["deployment_id"]
            }
        ),
        Tool(
            name="deployment_reschedule",
            description="Move a scheduled deployment to a new time",
            inputSchema={
                "type": "object",
                "properties": {
                    **_DEPLOYMENT_REF,
                    "schedule": {
                        "type": "string",
                        "description": "now, +2h, -30m or ISO-8601"
                    }
                },
                "required": ["deployment_id", "schedule"]
            }
        ),
        Tool(
            name="deployment_cancel",
            description="Cancel a scheduled or approved deployment",
            inputSchema={
                "type": "object",
                "properties": {**_DEPLOYMENT_REF},
                "required": ["deployment_id"]
            }
        ),
        Tool(
            name="deployment_delete",
            description="Remove a deployment record from the log",
            inputSchema={
                "type": "object",
                "properties": {**_DEPLOYMENT_REF},
                "required": ["deployment_id"]
            }
        ),
        Tool(
            name="deployments_status",
            description="Deployment counts by mode and status",
            inputSchema={
                "type": "object",
                "properties": {},
                "required": []
            }
        ),
        Tool(
            name="pull",
            description="Export live state into a state-set directory (one file per collection)",
            inputSchema={
                "type": "object",
                "properties": {
                    "dir": {
                        "type": "string",
                        "description": "Target directory (default: .stateset)"
                    },
                    "include_secrets": _PROMOTION_FLAGS["include_secrets"],
                },
                "required": []
            }
        ),
        Tool(
            name="push",
            description="Import a state-set directory or bundle file into live state",
            inputSchema={
                "type": "object",
                "properties": {
                    "source": {
                        "type": "string",
                        "description": "Directory or bundle file (default: .stateset)"
                    },
                    **_PROMOTION_FLAGS,
                },
                "required": []
            }
        ),
        Tool(
            name="validate_state_set",
            description="Check a state-set source for missing ids and unreadable files",
            inputSchema={
                "type": "object",
                "properties": {
                    "source": {
                        "type": "string",
                        "description": "Directory or bundle file (default: .stateset)"
                    },
                    "strict": {
                        "type": "boolean",
                        "description": "Treat warnings as errors",
                        "default": False
                    }
                },
                "required": []
            }
        ),
        Tool(
            name="get_audit_log",
            description="Get recent previews, applies and deployment transitions",
            inputSchema={
                "type": "object",
                "properties": {
                    "target": {
                        "type": "string",
                        "description": "Filter by deployment id or source"
                    },
                    "operation": {
                        "type": "string",
                        "description": "Filter by operation (e.g. 'apply', 'deployment.approve')"
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum records to return",
                        "default": 20
                    }
                },
                "required": []
            }
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    arguments = arguments or {}
    target = arguments.get("deployment_id") or arguments.get("ref") or "N/A"

    async with timed_section(f"tool:{name}", target=target):
        try:
            orch = await get_orchestrator()

            if name == "snapshot_list":
                return await handle_snapshot_list(orch, arguments.get("query"))

            elif name == "snapshot_create":
                return await handle_snapshot_create(
                    orch,
                    arguments.get("label"),
                    arguments.get("include_secrets", False)
                )

            elif name == "snapshot_show":
                return await handle_snapshot_show(orch, arguments.get("ref"))

            elif name == "diff_snapshots":
                return await handle_diff_snapshots(
                    orch,
                    arguments.get("from_ref", "latest"),
                    arguments.get("to_ref", "current"),
                    arguments.get("include_secrets", False)
                )

            elif name == "promote":
                return await handle_promote(orch, arguments)

            elif name == "deployments_list":
                return await handle_deployments_list(orch, arguments)

            elif name == "deployment_get":
                return _text(orch.get_deployment(arguments["deployment_id"]).to_dict())

            elif name == "deployment_approve":
                return await handle_deployment_approve(orch, arguments)

            elif name == "deployment_retry":
                return await handle_deployment_retry(orch, arguments)

            elif name == "deployment_reschedule":
                deployment = orch.reschedule(arguments["deployment_id"], arguments["schedule"])
                return _text(deployment.to_dict())

            elif name == "deployment_cancel":
                return _text(orch.cancel(arguments["deployment_id"]).to_dict())

            elif name == "deployment_delete":
                removed = orch.delete(arguments["deployment_id"])
                return _text({"removed": removed.to_dict()})

            elif name == "deployments_status":
                return _text(orch.status_summary())

            elif name == "pull":
                return _text(await orch.pull(
                    arguments.get("dir"),
                    include_secrets=arguments.get("include_secrets", False)
                ))

            elif name == "push":
                outcome = await orch.push(arguments.get("source"), _options(arguments))
                return _text(outcome.to_dict())

            elif name == "validate_state_set":
                return _text(orch.validate(
                    arguments.get("source"),
                    strict=arguments.get("strict", False)
                ))

            elif name == "get_audit_log":
                return await handle_get_audit_log(
                    arguments.get("target"),
                    arguments.get("operation"),
                    arguments.get("limit", 20)
                )

            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]

        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return [TextContent(type="text", text=f"Error: {str(e)}")]


# === TOOL HANDLERS ===

async def handle_snapshot_list(
    orch: DeploymentOrchestrator,
    query: Optional[str] = None
) -> list[TextContent]:
    """List stored snapshots."""
    snapshots = orch.list_snapshots(query)
    return _text({
        "count": len(snapshots),
        "query": query,
        "snapshots": [s.to_dict() for s in snapshots],
    })


async def handle_snapshot_create(
    orch: DeploymentOrchestrator,
    label: Optional[str] = None,
    include_secrets: bool = False
) -> list[TextContent]:
    """Export live state as a new snapshot."""
    info, bundle = await orch.create_snapshot(label=label, include_secrets=include_secrets)
    return _text({
        "success": True,
        "snapshot": info.to_dict(),
        "counts": bundle.counts(),
    })


async def handle_snapshot_show(
    orch: DeploymentOrchestrator,
    ref: Optional[str] = None
) -> list[TextContent]:
    """Snapshot metadata and counts, without the entity payloads."""
    path, bundle = orch.show_snapshot(ref)
    return _text({
        "snapshot": path.name,
        "path": str(path),
        "version": bundle.version,
        "orgId": bundle.org_id,
        "exportedAt": bundle.exported_at,
        "counts": bundle.counts(),
        "checksum": compute_checksum(bundle.to_dict()),
    })


async def handle_diff_snapshots(
    orch: DeploymentOrchestrator,
    from_ref: str,
    to_ref: str,
    include_secrets: bool = False
) -> list[TextContent]:
    """Diff two references and include the text table."""
    summary = await orch.diff(from_ref, to_ref, include_secrets=include_secrets)
    return _text({
        **summary.to_dict(),
        "table": summarize_diff(summary),
    })


async def handle_promote(orch: DeploymentOrchestrator, arguments: dict) -> list[TextContent]:
    """Direct or scheduled deploy/rollback."""
    mode = DeploymentMode(arguments["mode"])
    options = _options(arguments)

    if arguments.get("schedule"):
        deployment = orch.schedule(mode, arguments["ref"], arguments["schedule"], options)
        return _text({"scheduled": True, "deployment": deployment.to_dict()})

    outcome = await orch.promote(mode, arguments["ref"], options)
    return _text(outcome.to_dict())


async def handle_deployments_list(
    orch: DeploymentOrchestrator,
    arguments: dict
) -> list[TextContent]:
    """Filtered page of deployments."""
    page = orch.list_deployments(
        reference=arguments.get("reference"),
        mode=DeploymentMode(arguments["mode"]) if arguments.get("mode") else None,
        status=DeploymentStatus(arguments["status"]) if arguments.get("status") else None,
        limit=arguments.get("limit", 50),
        offset=arguments.get("offset", 0),
    )
    return _text({**page, "deployments": [d.to_dict() for d in page["deployments"]]})


async def handle_deployment_approve(
    orch: DeploymentOrchestrator,
    arguments: dict
) -> list[TextContent]:
    """Approve and run a deployment."""
    outcome = await orch.approve(
        arguments["deployment_id"],
        source=arguments.get("source"),
        dry_run=arguments.get("dry_run"),
        strict=arguments.get("strict"),
        include_secrets=arguments.get("include_secrets"),
    )
    deployment = orch.get_deployment(outcome.deployment_id)
    return _text({**outcome.to_dict(), "deployment": deployment.to_dict()})


async def handle_deployment_retry(
    orch: DeploymentOrchestrator,
    arguments: dict
) -> list[TextContent]:
    """Retry a failed deployment under a new id."""
    outcome = await orch.retry(
        arguments["deployment_id"],
        source=arguments.get("source"),
        dry_run=arguments.get("dry_run"),
        strict=arguments.get("strict"),
    )
    deployment = orch.get_deployment(outcome.deployment_id)
    return _text({**outcome.to_dict(), "deployment": deployment.to_dict()})


async def handle_get_audit_log(
    target: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 20
) -> list[TextContent]:
    """Get recent operations from the audit log."""
    records = get_recent_operations(
        log_file=get_settings().audit_dir / AUDIT_FILE,
        target=target,
        operation=operation,
        limit=limit
    )

    # Format for display
    formatted_records = []
    for r in records:
        formatted_records.append({
            "timestamp": r.timestamp,
            "operation": r.operation,
            "target": r.target,
            "dry_run": r.dry_run,
            "success": r.success,
            "parameters": r.parameters,
            "error": r.error,
        })

    return _text({
        "total_records": len(formatted_records),
        "summary": summarize_records(records),
        "filters": {
            "target": target,
            "operation": operation,
            "limit": limit,
        },
        "records": formatted_records,
    })


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List stored snapshots as resources."""
    orch = await get_orchestrator()
    resources = []

    for snap in orch.list_snapshots():
        resources.append(Resource(
            uri=AnyUrl(f"{RESOURCE_SCHEME}snapshots/{snap.id}"),
            name=snap.id,
            description=f"Snapshot bundle {snap.file} ({snap.size} bytes)",
            mimeType="application/json",
        ))

    return resources


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    # Parse URI: stateset://snapshots/<id>
    uri_str = str(uri)
    if uri_str.startswith(RESOURCE_SCHEME):
        parts = uri_str[len(RESOURCE_SCHEME):].split("/", 1)
        if len(parts) == 2 and parts[0] == "snapshots" and parts[1]:
            orch = await get_orchestrator()
            _, bundle = orch.show_snapshot(parts[1])
            return bundle.to_json()

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    setup_logging()
    setup_audit_logging(get_settings().audit_dir)

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            try:
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options()
                )
            finally:
                if backend is not None:
                    await backend.disconnect()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
