import re
from pathlib import Path, PurePath

SESSION_INDEX_FILE = "sessions-index.json"
LOG_SUFFIX = ".jsonl"

_WINDOWS_DRIVE = re.compile(r"^([A-Za-z])--")


def _relative_parts(
    path: "str | PurePath", projects_dir: "str | Path"
) -> "tuple[str, ...] | None":
    # normalise windows separators so both spellings resolve the same way
    candidate = PurePath(str(path).replace("\\", "/"))
    root = PurePath(str(projects_dir).replace("\\", "/"))
    try:
        return candidate.relative_to(root).parts
    except ValueError:
        return None


def project_id_from_path(
    path: "str | PurePath", projects_dir: "str | Path"
) -> "str | None":
    """
    returns the project directory name for a path below the projects
    root, e.g. <root>/C--Users-foo-bar/abc.jsonl -> 'C--Users-foo-bar'.
    """
    parts = _relative_parts(path, projects_dir)
    if not parts or len(parts) < 2:
        return None
    return parts[0]


def session_key_from_path(
    path: "str | PurePath", projects_dir: "str | Path"
) -> "tuple[str, str] | None":
    """
    extracts (project_id, session_id) from a session log path. Accepts
    <root>/<project>/<session>.jsonl and <root>/<project>/sessions/<session>.jsonl.
    Index files and anything else return None.
    """
    parts = _relative_parts(path, projects_dir)
    if not parts:
        return None

    if len(parts) == 2:
        project_id, filename = parts
    elif len(parts) == 3 and parts[1] == "sessions":
        project_id, filename = parts[0], parts[2]
    else:
        return None

    if not filename.endswith(LOG_SUFFIX):
        return None
    session_id = filename[: -len(LOG_SUFFIX)]
    if not session_id or session_id == "sessions-index":
        return None
    return project_id, session_id


def decode_project_dir(project_id: "str") -> "str":
    """
    best-effort reconstruction of a workspace path from its encoded
    directory name. The encoding is lossy: '-' inside names is lost.
    """
    match = _WINDOWS_DRIVE.match(project_id)
    if match:
        rest = project_id[match.end():]
        return f"{match.group(1)}:\\" + rest.replace("-", "\\")
    if project_id.startswith("-"):
        return project_id.replace("-", "/")
    return project_id


def display_name(path: "str") -> "str":
    stripped = path.rstrip("/\\")
    name = re.split(r"[/\\]", stripped)[-1] if stripped else ""
    return name or path
