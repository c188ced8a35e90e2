"""
.gitignore maintenance for purged paths.

Purged paths go into a managed section of the ignore file so they are not
committed again. Lines the user wrote elsewhere in the file are left alone.
"""

from typing import Iterable, List, Optional

SECTION_TITLE = "Purged from history by histguard"


def existing_patterns(content: str) -> List[str]:
    """Non-comment, non-blank lines of an ignore file."""
    patterns = []
    for line in content.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith('#'):
            patterns.append(stripped)
    return patterns


def missing_patterns(content: str, patterns: Iterable[str]) -> List[str]:
    """Patterns not yet present in `content`, in order, without duplicates."""
    present = set(existing_patterns(content))
    missing = []
    for pattern in patterns:
        if pattern not in present and pattern not in missing:
            missing.append(pattern)
    return missing


def merge_ignore_content(content: Optional[str], patterns: Iterable[str]) -> Optional[str]:
    """
    Add patterns to an ignore file's managed section.

    Args:
        content: Current file content, None when the file does not exist
        patterns: Patterns to ensure are present

    Returns:
        New content, or None when nothing needed adding
    """
    content = content or ""
    missing = missing_patterns(content, patterns)
    if not missing:
        return None

    header = f"# {SECTION_TITLE}"
    lines = content.splitlines()
    if header in lines:
        # Append to the end of the existing managed section
        idx = lines.index(header) + 1
        while idx < len(lines) and lines[idx].strip() and not lines[idx].startswith('#'):
            idx += 1
        lines[idx:idx] = missing
        return "\n".join(lines) + "\n"

    section = _format_section(SECTION_TITLE, missing)
    if content and not content.endswith("\n"):
        content += "\n"
    separator = "\n" if content else ""
    return content + separator + section + "\n"


def _format_section(title: str, patterns: List[str]) -> str:
    """Format a section of .gitignore patterns."""
    if not patterns:
        return ""

    lines = [f"# {title}"]
    lines.extend(patterns)
    return "\n".join(lines)
