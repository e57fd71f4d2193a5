"""Mapping changed file paths onto domains."""

from collections.abc import Iterable


def path_in_domain(file_path: str, domain: str) -> bool:
    """True when ``domain`` appears as a full directory component of the path."""
    return f"/{domain}/" in file_path or f"\\{domain}\\" in file_path


def infer_domains(files: Iterable[str], known_domains: Iterable[str]) -> list[str]:
    """Known domains touched by ``files``, in ``known_domains`` order."""
    files = list(files)
    return [
        domain for domain in known_domains
        if any(path_in_domain(path, domain) for path in files)
    ]


def group_files_by_domain(files: Iterable[str], domains: Iterable[str]) -> dict[str, list[str]]:
    """Files per domain; domains with no matching file are omitted."""
    files = list(files)
    grouped = {}
    for domain in domains:
        matching = [path for path in files if path_in_domain(path, domain)]
        if matching:
            grouped[domain] = matching
    return grouped
