"""
A fast, language-agnostic lint pass for code the model writes.

It does not parse anything. It tracks bracket nesting and string literals
character by character and reports the places where they do not balance,
which is enough to catch the truncated or half-edited files that are the
usual failure mode of whole-file rewrites.
"""
from typing import Optional

from config import MAX_LINT_ISSUES

_CLOSERS = {")": "(", "]": "[", "}": "{"}
_OPENERS = {v: k for k, v in _CLOSERS.items()}
_COMMENT_PREFIXES = ("//", "# ", "#!", "/*", "* ", "*/", "<!--", "-- ")
_PROSE_EXTENSIONS = (".md", ".markdown", ".txt", ".rst")
_HASH_COMMENT_EXTENSIONS = (".py", ".rb", ".sh", ".bash", ".yaml", ".yml", ".toml", ".r")


def _issue(line: int, column: int, message: str) -> dict:
    return {"line": line, "column": column, "message": message}


def lint_text(content: str, path: Optional[str] = None, max_issues: int = MAX_LINT_ISSUES) -> tuple[list[dict], bool]:
    """
    Reports unbalanced delimiters and unterminated string literals.

    Comment-only lines are skipped, and so is the rest of a line after a
    trailing comment (`#` in script and config files, `//` elsewhere) that
    follows whitespace outside a string. Quote checks are skipped for prose
    files, where apostrophes are not string delimiters.

    Returns:
        (issues, truncated) where `truncated` is True when more than
        `max_issues` problems were found and the list was cut.
    """
    check_quotes = not (path or "").lower().endswith(_PROSE_EXTENSIONS)
    comment_marker = "#" if (path or "").lower().endswith(_HASH_COMMENT_EXTENSIONS) else "//"
    issues: list[dict] = []
    stack: list[tuple[str, int, int]] = []
    # Multi-line string state: the opening token and where it started.
    block: Optional[tuple[str, int, int]] = None

    for line_no, line in enumerate(content.splitlines(), start=1):
        if block is None and line.lstrip().startswith(_COMMENT_PREFIXES):
            continue
        quote: Optional[str] = None
        quote_col = 0
        col = 0
        while col < len(line):
            ch = line[col]
            if block is not None:
                token = block[0]
                if ch == "\\":
                    col += 2
                    continue
                if line.startswith(token, col):
                    block = None
                    col += len(token)
                    continue
                col += 1
                continue
            if quote is not None:
                if ch == "\\":
                    col += 2
                    continue
                if ch == quote:
                    quote = None
                col += 1
                continue
            if line.startswith(comment_marker, col) and (col == 0 or line[col - 1] in " \t"):
                break
            if check_quotes and (line.startswith('"""', col) or line.startswith("'''", col)):
                block = (line[col : col + 3], line_no, col + 1)
                col += 3
                continue
            if check_quotes and ch == "`":
                block = ("`", line_no, col + 1)
            elif check_quotes and ch in "\"'":
                quote, quote_col = ch, col + 1
            elif ch in _OPENERS:
                stack.append((ch, line_no, col + 1))
            elif ch in _CLOSERS:
                if stack and stack[-1][0] == _CLOSERS[ch]:
                    stack.pop()
                elif stack:
                    opener, open_line, open_col = stack.pop()
                    issues.append(_issue(
                        line_no, col + 1,
                        f"Mismatched '{ch}': expected '{_OPENERS[opener]}' to close '{opener}' from line {open_line}, column {open_col}.",
                    ))
                else:
                    issues.append(_issue(line_no, col + 1, f"Unmatched closing '{ch}'."))
            col += 1
        if quote is not None and not line.endswith("\\"):
            issues.append(_issue(line_no, quote_col, f"Unterminated string literal ({quote})."))

    if block is not None:
        token, open_line, open_col = block
        issues.append(_issue(open_line, open_col, f"Unterminated multi-line string ({token})."))
    for opener, open_line, open_col in stack:
        issues.append(_issue(open_line, open_col, f"Unclosed '{opener}'."))

    issues.sort(key=lambda issue: (issue["line"], issue["column"]))
    truncated = len(issues) > max_issues
    return issues[:max_issues], truncated
