import re

_PARENS_RE = re.compile(r"\(([^)]*)\)")
_MARKDOWN_RE = re.compile(r"\*\*|[*_`\[\]#]")


def clean_markdown(text: str) -> str:
    """Убирает markdown-разметку (**, *, _, `, [], #), которую иногда возвращают LLM."""
    return _MARKDOWN_RE.sub("", text or "").strip()


def extract_person_name(full_name: str) -> str:
    """'Николай 2 (последний император)' -> 'Николай 2'"""
    name = _PARENS_RE.sub("", full_name or "")
    name = name.replace("*", "")
    return " ".join(name.split())


def has_additional_info(full_name: str) -> bool:
    return any(part.strip() for part in _PARENS_RE.findall(full_name or ""))


def extract_additional_info(full_name: str) -> str:
    parts = [part.strip() for part in _PARENS_RE.findall(full_name or "")]
    return ", ".join(p for p in parts if p)


def full_name_for_generation(full_name: str) -> str:
    name = extract_person_name(full_name)
    info = extract_additional_info(full_name)
    if info:
        return f"{name} ({info})"
    return name
