"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

_RESOLVED_REF = {
    "type": "object",
    "properties": {
        "requested_name": {"type": "string"},
        "resolved_name": {
            "type": "string",
            "description": "Name that resolved: the requested one, or origin/<name> as fallback",
        },
        "exists": {"type": "boolean"},
        "commit_hash": {"type": ["string", "null"]},
    },
}

_FAILURE = {
    "type": ["object", "null"],
    "properties": {
        "stage": {"type": "string", "enum": ["resolve", "ancestry", "search", "scheduler"]},
        "message": {"type": "string"},
    },
}


def _common_inputs(with_base: bool = True) -> dict:
    properties = {
        "branch": {
            "type": "string",
            "description": "Branch name; resolved locally first, then as origin/<branch>",
        },
        "path": {
            "type": "string",
            "description": "Root directory whose immediate subdirectories are repositories (default: config 'directory', else current directory)",
        },
        "roots": {
            "type": "string",
            "description": "Path to roots file (overrides auto-resolution). Auto-resolved from: $BRANCH_FLEET_ROOTS env var → ~/.config/branch-fleet/roots",
        },
        "format": {
            "type": "string",
            "enum": ["table", "simple", "json"],
            "description": "Output format; use json for machine parsing",
            "default": "table",
        },
        "no_fetch": {
            "type": "boolean",
            "description": "Skip 'git fetch --all --prune' (faster but may use stale remote branches)",
            "default": False,
        },
        "parallel": {
            "type": "integer",
            "description": "Repositories inspected at once (default: config 'concurrency', else 5)",
            "minimum": 1,
        },
    }
    if with_base:
        properties["base_branch"] = {
            "type": "string",
            "description": "Reference branch (default: config 'base_branch', else master)",
        }
        properties["show_missing"] = {
            "type": "boolean",
            "description": "List repositories lacking the branch or the base branch",
            "default": False,
        }
    return {"type": "object", "properties": properties, "required": ["branch"]}


def _inspection_output(direction: str) -> dict:
    return {
        "type": "object",
        "properties": {
            "branch": {"type": "string"},
            "base_branch": {"type": "string"},
            "direction": {"type": "string", "enum": [direction]},
            "summary": {
                "type": "object",
                "properties": {
                    "total": {"type": "integer"},
                    "satisfied": {"type": "integer"},
                    "behind": {"type": "integer"},
                    "missing_branch": {"type": "integer"},
                    "missing_base": {"type": "integer"},
                    "errors": {"type": "integer"},
                    "sync_failed": {"type": "integer"},
                },
            },
            "results": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "path": {"type": "string"},
                        "direction": {"type": "string"},
                        "sync_succeeded": {"type": "boolean"},
                        "sync_error": {"type": "string"},
                        "branch_ref": _RESOLVED_REF,
                        "base_ref": _RESOLVED_REF,
                        "is_ancestor_satisfied": {
                            "type": "boolean",
                            "description": "Only meaningful when both refs exist and failure is null",
                        },
                        "drift_count": {"type": "integer", "minimum": 0},
                        "commit_hash": {"type": ["string", "null"]},
                        "commit_timestamp": {"type": ["string", "null"], "format": "date-time"},
                        "merge_commit": {"type": ["string", "null"]},
                        "merge_timestamp": {"type": ["string", "null"], "format": "date-time"},
                        "failure": _FAILURE,
                    },
                },
            },
        },
    }


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    return {
        "name": "branch-fleet",
        "version": __version__,
        "description": "Audit branch merge state across a fleet of Git repositories. Answers in bulk which repositories carry a branch, whether it has been merged into the base branch, and whether it contains all of the base branch's history. Repositories are inspected in bounded parallel waves.",
        "usage": "branch-fleet <command> [branch] [path] [options]",
        "tools": [
            {
                "name": "merged",
                "description": "Check whether a branch has been merged into the base branch (branch tip is an ancestor of the base tip). drift_count is the number of branch commits not yet in the base branch.",
                "inputSchema": _common_inputs(),
                "outputSchema": _inspection_output("branch_into_base"),
                "examples": [
                    {
                        "description": "Which repos in ~/work have merged feature/auth into master",
                        "command": "branch-fleet merged feature/auth ~/work --format json",
                    },
                ],
            },
            {
                "name": "uptodate",
                "description": "Check whether a branch contains all of the base branch's history (base tip is an ancestor of the branch tip). drift_count is the number of base commits the branch lacks.",
                "inputSchema": _common_inputs(),
                "outputSchema": _inspection_output("base_into_branch"),
                "examples": [
                    {
                        "description": "Is dev up to date with main, without fetching",
                        "command": "branch-fleet uptodate dev --base-branch main --no-fetch --format json",
                    },
                ],
            },
            {
                "name": "branch",
                "description": "Find repositories that carry a branch (exact name match), optionally including origin's remote-tracking branches.",
                "inputSchema": {
                    **_common_inputs(with_base=False),
                    "properties": {
                        **_common_inputs(with_base=False)["properties"],
                        "remote": {
                            "type": "boolean",
                            "description": "Also search origin's remote-tracking branches",
                            "default": False,
                        },
                    },
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "branch": {"type": "string"},
                        "summary": {
                            "type": "object",
                            "properties": {
                                "total": {"type": "integer"},
                                "matched": {"type": "integer"},
                                "errors": {"type": "integer"},
                            },
                        },
                        "results": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "name": {"type": "string"},
                                    "path": {"type": "string"},
                                    "has_target_branch": {"type": "boolean"},
                                    "branches": {"type": "array", "items": {"type": "string"}},
                                    "sync_succeeded": {"type": "boolean"},
                                    "failure": _FAILURE,
                                },
                            },
                        },
                    },
                },
            },
            {
                "name": "list",
                "description": "List discovered repositories (immediate subdirectories containing .git, minus excluded names).",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string"},
                        "roots": {"type": "string"},
                        "format": {"type": "string", "enum": ["table", "simple", "json"]},
                    },
                    "required": [],
                },
            },
        ],
        "configFile": {
            "description": "Optional JSON file with run defaults; command-line options override it",
            "priority": [
                "--config option",
                "$BRANCH_FLEET_CONFIG environment variable",
                "~/.config/branch-fleet/config.json (XDG-compliant)",
                "~/.branch-fleet.json",
            ],
            "keys": {
                "directory": "Default root directory",
                "base_branch": "Default base branch (master)",
                "concurrency": "Default wave size (5)",
                "exclude": "Repository names to skip",
                "sync_timeout": "Seconds before a fetch counts as failed (30)",
                "git_timeout": "Seconds bound for other git calls (120, null for none)",
            },
        },
        "notes": [
            "Missing branches are not errors: check branch_ref.exists and base_ref.exists before is_ancestor_satisfied",
            "A failed fetch sets sync_succeeded=false; the verdict is still computed from local state",
            "Results keep discovery order regardless of completion order",
        ],
    }
