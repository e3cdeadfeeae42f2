"""Changed-file relevance filter for deploy scans.

Decides whether a push could visually affect a monitored page. The rules are
conservative: a file that is not recognised as non-visual or as scoped to a
different route counts as affecting the page.
"""
from __future__ import annotations

from typing import Iterable, Mapping
from urllib.parse import urlparse

NON_VISUAL_PREFIXES = (
    "src/app/api/",
    "src/lib/",
    "pages/api/",
    "app/api/",
    "inngest/",
    "migrations/",
    "supabase/",
    "scripts/",
    "tests/",
    "__tests__/",
    "docs/",
    ".github/",
    ".vscode/",
)

NON_VISUAL_EXACT = frozenset(
    {
        ".gitignore",
        ".eslintrc.json",
        "tsconfig.json",
        "package.json",
        "package-lock.json",
        "pnpm-lock.yaml",
        "yarn.lock",
        "README.md",
        "CHANGELOG.md",
        "LICENSE",
    }
)

NON_VISUAL_SUFFIXES = (".md", ".test.ts", ".test.tsx", ".spec.ts", ".spec.tsx", ".sql")

# Files that affect every page.
GLOBAL_PATTERNS = (
    "src/app/layout.",
    "app/layout.",
    "src/app/globals.css",
    "app/globals.css",
    "src/styles/",
    "styles/",
    "public/",
    "tailwind.config",
    "next.config",
    "postcss.config",
    "pages/_app.",
    "pages/_document.",
)

# Directories whose first path segment maps to a route.
ROUTE_ROOTS = ("src/app/", "app/", "src/pages/", "pages/")

SHARED_COMPONENT_ROOTS = ("src/components/", "components/")


def extract_route(url: str) -> str:
    try:
        path = urlparse(url).path
    except ValueError:
        return "/"
    path = path.rstrip("/") or "/"
    return path


def _route_matches(route: str, target: str) -> bool:
    return route == target or (target != "/" and route.startswith(target + "/"))


def _file_route(relative: str) -> str | None:
    """Route a file under an app/pages root renders on; None when shared."""
    if "/" not in relative:
        stem = relative.rsplit(".", 1)[0]
        if stem in {"page", "index", "loading", "error"}:
            return "/"
        return None
    first = relative.split("/", 1)[0]
    # Next.js route groups "(marketing)/pricing" do not add a segment.
    if first.startswith("(") and first.endswith(")"):
        return _file_route(relative.split("/", 1)[1])
    return f"/{first}"


def could_affect_page(
    changed_files: Iterable[str] | None,
    page_url: str,
    *,
    component_routes: Mapping[str, Iterable[str]] | None = None,
) -> bool:
    """True when any changed file could alter the rendering of `page_url`.

    `component_routes` optionally maps component directories to the routes
    they render on (e.g. ``{"src/components/pricing/": ["/pricing"]}``).
    """
    files = [f.strip() for f in (changed_files or []) if f and f.strip()]
    if not files:
        return True

    route = extract_route(page_url)
    component_routes = component_routes or {}

    for path in files:
        if path.startswith(NON_VISUAL_PREFIXES) or path in NON_VISUAL_EXACT:
            continue
        if path.endswith(NON_VISUAL_SUFFIXES):
            continue
        if path.startswith("."):
            continue

        if path.startswith(GLOBAL_PATTERNS):
            return True

        mapped = next((d for d in component_routes if path.startswith(d)), None)
        if mapped is not None:
            if any(_route_matches(route, r) for r in component_routes[mapped]):
                return True
            continue

        shared_root = next((r for r in SHARED_COMPONENT_ROOTS if path.startswith(r)), None)
        if shared_root is not None:
            # Unmapped component: could be rendered anywhere.
            return True

        route_root = next((r for r in ROUTE_ROOTS if path.startswith(r)), None)
        if route_root is not None:
            file_route = _file_route(path[len(route_root):])
            if file_route is None or _route_matches(route, file_route):
                return True
            continue

        return True

    return False
