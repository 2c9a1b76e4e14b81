"""Path utilities: materialized node paths and blob key layout.

These helpers centralize the rules used by the metadata adapter and the
file tree service:
- a node path is the slash-joined chain of ancestor names, without leading or
  trailing '/'; a root-level node's path is just its name;
- names are trimmed before any comparison; comparison is exact and case-sensitive;
- blob keys are "{project_id}/{path}".
"""

from __future__ import annotations

from app.packages.workspace.core.constants import MAX_NAME_LENGTH, MAX_PATH_LENGTH, RESERVED_NAMES
from app.packages.workspace.core.exceptions import ValidationError


def normalize_name(name: object) -> str:
    if not isinstance(name, str):
        raise ValidationError("名称必须为字符串")
    trimmed = name.strip()
    if not trimmed:
        raise ValidationError("名称不能为空")
    if "/" in trimmed:
        raise ValidationError("名称不能包含 '/'")
    try:
        trimmed.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValidationError("名称必须为合法的 UTF-8 文本") from exc
    if trimmed in RESERVED_NAMES:
        raise ValidationError(f"名称不能为 '{trimmed}'")
    if len(trimmed) > MAX_NAME_LENGTH:
        raise ValidationError(f"名称长度不能超过 {MAX_NAME_LENGTH} 个字符")
    return trimmed


def materialize(parent_path: str | None, name: str) -> str:
    # name must already be non-empty after trim; callers validate via normalize_name
    trimmed = name.strip()
    base = (parent_path or "").rstrip("/")
    return f"{base}/{trimmed}" if base else trimmed


def ensure_path_length(path: str) -> str:
    if len(path) > MAX_PATH_LENGTH:
        raise ValidationError(f"路径长度不能超过 {MAX_PATH_LENGTH} 个字符")
    return path


def is_same_or_descendant(path: str, ancestor: str) -> bool:
    return path == ancestor or path.startswith(ancestor + "/")


def rebase_path(path: str, old_prefix: str, new_prefix: str) -> str:
    """Swap a leading ``old_prefix`` for ``new_prefix``; unrelated paths are returned unchanged."""
    if path == old_prefix:
        return new_prefix
    if path.startswith(old_prefix + "/"):
        return new_prefix + path[len(old_prefix):]
    return path


def blob_key_for(project_id: str, path: str) -> str:
    return f"{project_id}/{path}"


def blob_prefix_for(project_id: str) -> str:
    return f"{project_id}/"
