"""Project materializer — decides what goes into the sandbox filesystem.

For a given project type this writes, in order:
1. The template scaffold (package manifest, bundler/compiler/style config, index.html)
2. The baseline sources (entry point, root component, styles, hooks, error boundary)
3. The catalog components the generated code actually imports
4. The generated application files themselves

Catalog components live under the "@/components/lib/<Name>" namespace.
Shipping the whole catalog bloats every build and shipping none of it breaks
code that uses it, so only the import graph reachable from the generated
sources is uploaded.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from apps.api.services.sandbox import SandboxSession

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

LIBRARY_NAMESPACE = "@/components/lib"
LIBRARY_DIR = "src/components/lib"

# Static `import x from '...'`, side-effect `import '...'` and dynamic `import('...')`
_LIBRARY_IMPORT_RE = re.compile(
    r"""(?:\bfrom|\bimport)\s*\(?\s*['"]@/components/lib/([A-Za-z0-9_]+)(?:\.tsx?)?['"]"""
)


@dataclass(frozen=True)
class ProjectTemplate:
    """Everything needed to scaffold and build one kind of project."""
    name: str
    description: str
    install_command: str
    typecheck_command: str
    build_command: str
    build_dir: str
    entry_document: str
    scaffold_files: tuple[str, ...]
    baseline_files: tuple[str, ...]

    @property
    def root(self) -> Path:
        return TEMPLATES_DIR / self.name


TEMPLATES: dict[str, ProjectTemplate] = {
    "vite-react": ProjectTemplate(
        name="vite-react",
        description="Vite + React + TypeScript + Tailwind CSS single-page app",
        install_command="npm install --no-audit --no-fund",
        typecheck_command="npx tsc --noEmit",
        build_command="npm run build",
        build_dir="dist",
        entry_document="index.html",
        scaffold_files=(
            "package.json",
            "vite.config.ts",
            "tsconfig.json",
            "tsconfig.node.json",
            "tailwind.config.js",
            "postcss.config.js",
            "index.html",
        ),
        baseline_files=(
            "src/main.tsx",
            "src/App.tsx",
            "src/index.css",
            "src/lib/utils.ts",
            "src/components/ErrorBoundary.tsx",
            "src/hooks/use-mobile.tsx",
            "src/hooks/use-toast.ts",
        ),
    ),
}


def get_template(project_type: str) -> ProjectTemplate:
    template = TEMPLATES.get(project_type)
    if template is None:
        raise ValueError(f"Template '{project_type}' not found")
    return template


# ── Component catalog ─────────────────────────────────

GENERAL_COMPONENTS = (
    "Header",
    "Footer",
    "Hero",
    "FeatureGrid",
    "Testimonials",
    "PricingTable",
    "ContactForm",
)

DOMAIN_COMPONENTS: dict[str, tuple[str, ...]] = {
    "web3": ("WalletConnectButton", "TokenSwapCard", "PriceTicker", "PortfolioChart"),
}

DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "web3": (
        "web3", "crypto", "defi", "wallet", "token", "blockchain", "nft",
        "dex", "swap", "finance", "trading", "portfolio",
    ),
}


def detect_domains(prompt: str) -> set[str]:
    """Domains whose curated keywords appear in the prompt (whole words)."""
    text = prompt.lower()
    return {
        domain
        for domain, keywords in DOMAIN_KEYWORDS.items()
        if any(re.search(rf"\b{re.escape(k)}\b", text) for k in keywords)
    }


def available_components(prompt: str = "") -> set[str]:
    names = set(GENERAL_COMPONENTS)
    for domain in detect_domains(prompt):
        names.update(DOMAIN_COMPONENTS[domain])
    return names


def find_library_imports(text: str) -> set[str]:
    """Names imported from the library namespace in one file's text."""
    return set(_LIBRARY_IMPORT_RE.findall(text))


def read_component(name: str) -> str:
    return (TEMPLATES_DIR / "components" / f"{name}.tsx").read_text(encoding="utf-8")


def resolve_components(sources: list[str], prompt: str = "") -> tuple[list[str], list[str]]:
    """Walk the import graph from the generated sources into the catalog.

    A component is included iff some generated file, or some already
    included component, imports it by name from the library namespace.
    Returns (included, unresolved), both sorted.
    """
    available = available_components(prompt)
    pending: set[str] = set()
    for text in sources:
        pending |= find_library_imports(text)

    included: set[str] = set()
    unresolved: set[str] = set()
    while pending:
        name = pending.pop()
        if name in included or name in unresolved:
            continue
        if name not in available:
            unresolved.add(name)
            continue
        included.add(name)
        pending |= find_library_imports(read_component(name)) - included

    return sorted(included), sorted(unresolved)


# ── Materialization ───────────────────────────────────

@dataclass
class SourceFile:
    path: str
    content: str | bytes


@dataclass
class MaterializeConfig:
    files: list[SourceFile]
    prompt: str = ""


@dataclass
class MaterializeReport:
    template: str
    written: list[str] = field(default_factory=list)
    components: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


def normalize_source_path(path: str) -> str:
    """Workspace-relative path for a generated file.

    "./src/App.tsx" and "/src/App.tsx" become "src/App.tsx"; generators that
    emit a Next-style "app/" tree are mapped onto "src/".
    """
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")
    if normalized.startswith("app/"):
        normalized = "src/" + normalized[len("app/"):]
    if not normalized:
        raise ValueError(f"Invalid source path: {path!r}")
    return normalized


class ProjectMaterializer:
    """Writes a complete, buildable source tree into a sandbox."""

    async def materialize(
        self, session: SandboxSession, project_type: str, config: MaterializeConfig
    ) -> MaterializeReport:
        template = get_template(project_type)
        report = MaterializeReport(template=template.name)

        generated: dict[str, str | bytes] = {}
        for source in config.files:
            generated[normalize_source_path(source.path)] = source.content

        for rel_path in template.scaffold_files:
            await self._write(session, report, rel_path, self._read_template(template, rel_path))

        for rel_path in template.baseline_files:
            if rel_path in generated:
                continue
            await self._write(session, report, rel_path, self._read_template(template, rel_path))

        texts = [c for c in generated.values() if isinstance(c, str)]
        included, unresolved = resolve_components(texts, config.prompt)
        for name in unresolved:
            logger.warning(
                "Generated code imports %s/%s which is not in the catalog; skipping",
                LIBRARY_NAMESPACE,
                name,
            )
        for name in included:
            rel_path = f"{LIBRARY_DIR}/{name}.tsx"
            if rel_path in generated:
                continue
            await self._write(session, report, rel_path, read_component(name))
        report.components = included
        report.unresolved = unresolved

        for rel_path, content in generated.items():
            await self._write(session, report, rel_path, content)

        logger.info(
            "Materialized %s: %d files, components=%s",
            template.name,
            len(report.written),
            ",".join(included) or "-",
        )
        return report

    @staticmethod
    def _read_template(template: ProjectTemplate, rel_path: str) -> str:
        return (template.root / rel_path).read_text(encoding="utf-8")

    @staticmethod
    async def _write(
        session: SandboxSession, report: MaterializeReport, rel_path: str, content: str | bytes
    ) -> None:
        await session.write_file(rel_path, content)
        report.written.append(rel_path)


# Singleton instance
project_materializer = ProjectMaterializer()
