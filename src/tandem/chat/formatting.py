import re

CODE_FENCE = "```"
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def reformat_bot_message(text: str, prefix: str = "") -> str:
    message = prefix + text.rstrip()
    # Close a code block that is still streaming so it renders as code.
    if message.count(CODE_FENCE) % 2 == 1:
        message += "\n" + CODE_FENCE
    return message


def extract_suggestions(text: str, limit: int = 3) -> list[str]:
    suggestions: list[str] = []
    for line in text.splitlines():
        line = _BULLET_RE.sub("", line.strip()).strip()
        if not line:
            continue
        suggestions.append(line)
        if len(suggestions) >= limit:
            break
    return suggestions
