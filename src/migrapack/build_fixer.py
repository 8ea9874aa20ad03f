"""Mechanical build repair for failed migration stages.

Given classified build errors and the migration context (which packages and
symbols moved where), the fixer proposes Fix candidates per error kind:

- import: rewrite the import string of a moved package
- dependency: create module manifests for new modules, add ``replace``
  directives to the root go.mod, and run one tidy pass
- type: qualify an undefined symbol that moved to another package

Edits to the same file are chained through an in-memory working copy so that
later fixes build on earlier ones; each Fix carries the file's full content
after its edit. The fixer never rebuilds; the stage executor performs exactly
one rebuild after ``fix`` returns.
"""

import logging
import os
import re
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config_loader import MigrationConfig
from .exceptions import PatchApplicationError
from .manifest import MigrationContext, NewModule
from .models import BuildError, ErrorKind, Fix, FixKind, FixResult
from .process import CommandResult, run_command

IMPORT_FIX_PATTERN = re.compile(
    r"cannot find package|cannot find module|no required module provides package"
    r"|No module named|ModuleNotFoundError|Cannot find module|Module not found"
)
TYPE_FIX_PATTERN = re.compile(
    r"undefined: (\w+)|cannot find type (\w+)|name '(\w+)' is not defined"
)

_QUOTED_RE = re.compile(r"[\"'`]([^\"'`]+)[\"'`]")
_PROVIDES_RE = re.compile(r"(?:provides|providing) package ([^\s;:]+)")
_NO_MODULE_RE = re.compile(r"No module named\s+(\S+)")
# String and rune literals, single-line block comments and line comments
_GO_LITERAL_RE = re.compile(r"\"(?:\\.|[^\"\\])*\"|`[^`]*`|'(?:\\.|[^'\\])*'|/\*.*?\*/|//.*")
_GO_CASE_RE = re.compile(r"\bcase\s+(?:[\w.*]+\s*,\s*)*$")

_SKIP_DIRS = {".git", "node_modules", "vendor", "__pycache__", ".venv", "venv", "dist", "build"}

EXACT_IMPORT_CONFIDENCE = 0.9
PREFIX_IMPORT_CONFIDENCE = 0.85
NEW_MODULE_CONFIDENCE = 0.95
REPLACE_DIRECTIVE_CONFIDENCE = 0.9
TYPE_CONFIDENCE = 0.85


class BuildFixer:
    """Classifies build failures into repairs and applies them."""

    def __init__(
        self,
        project_path: Path,
        config: MigrationConfig,
        state_dir_name: str = ".migrapack",
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None,
        runner: Callable[..., CommandResult] = run_command,
    ):
        self.project_path = Path(project_path).resolve()
        self.config = config
        self.state_dir_name = state_dir_name
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)
        self._run = runner
        self._working: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, errors: List[BuildError], context: MigrationContext) -> List[Fix]:
        """Produce Fix candidates for a set of classified errors.

        Errors are grouped by kind and handled import, dependency, type. Syntax
        errors have no heuristic and are left for the decision table.
        """
        self._working = {}
        grouped: Dict[ErrorKind, List[BuildError]] = OrderedDict(
            (kind, []) for kind in (ErrorKind.IMPORT, ErrorKind.DEPENDENCY, ErrorKind.TYPE)
        )
        unhandled = 0
        for error in errors:
            if error.kind in grouped:
                grouped[error.kind].append(error)
            else:
                unhandled += 1

        fixes: List[Fix] = []
        for error in grouped[ErrorKind.IMPORT]:
            fixes.extend(self._plan_import_fix(error, context))
        if grouped[ErrorKind.DEPENDENCY]:
            fixes.extend(self._plan_dependency_fixes(context))
        for error in grouped[ErrorKind.TYPE]:
            fix = self._plan_type_fix(error, context)
            if fix:
                fixes.append(fix)

        self.logger.info(
            f"[Fixer] Planned {len(fixes)} fixes for {len(errors)} errors"
            + (f" ({unhandled} without heuristic)" if unhandled else "")
        )
        return fixes

    def needs_tidy(self, errors: List[BuildError]) -> bool:
        return bool(self.config.tidy_command) and any(
            e.kind == ErrorKind.DEPENDENCY for e in errors
        )

    def _plan_import_fix(self, error: BuildError, context: MigrationContext) -> List[Fix]:
        if not IMPORT_FIX_PATTERN.search(error.message):
            return []

        old_path = self._extract_import_path(error.message)
        if not old_path:
            self.logger.debug(f"[Fixer] No import path in: {error.message}")
            return []

        resolved = context.resolve_package(old_path)
        if resolved is None:
            self.logger.debug(f"[Fixer] No known relocation for {old_path}")
            return []
        new_path, exact = resolved
        confidence = EXACT_IMPORT_CONFIDENCE if exact else PREFIX_IMPORT_CONFIDENCE

        target = self._relative(error.file)
        candidates = [target] if target and self._read(target) is not None else None
        if candidates is None:
            candidates = self._files_referencing(old_path)

        fixes = []
        for rel in candidates:
            content = self._read(rel)
            if content is None:
                continue
            updated = rewrite_import(content, old_path, new_path, python=rel.endswith(".py"))
            if updated == content:
                continue
            self._working[rel] = updated
            fixes.append(
                Fix(
                    kind=FixKind.IMPORT,
                    file=rel,
                    description=f'Update import from "{old_path}" to "{new_path}"',
                    patch_body=updated,
                    confidence=confidence,
                )
            )
        return fixes

    def _plan_dependency_fixes(self, context: MigrationContext) -> List[Fix]:
        fixes: List[Fix] = []
        missing: List[NewModule] = []

        for module in context.new_modules:
            manifest_rel = self._module_manifest_path(module)
            if manifest_rel is None:
                continue
            if self._read(manifest_rel) is not None:
                continue
            missing.append(module)
            body = self._module_manifest_content(module)
            self._working[manifest_rel] = body
            fixes.append(
                Fix(
                    kind=FixKind.CONFIG,
                    file=manifest_rel,
                    description=f"Create {Path(manifest_rel).name} for module {module.name}",
                    patch_body=body,
                    confidence=NEW_MODULE_CONFIDENCE,
                )
            )

        if self.config.language == "go" and context.new_modules:
            root = self._read("go.mod")
            if root is not None:
                updated = add_replace_directives(root, context.new_modules)
                if updated != root:
                    self._working["go.mod"] = updated
                    fixes.append(
                        Fix(
                            kind=FixKind.DEPENDENCY,
                            file="go.mod",
                            description="Update root go.mod with local module replace directives",
                            patch_body=updated,
                            confidence=REPLACE_DIRECTIVE_CONFIDENCE,
                        )
                    )
        if missing:
            self.logger.info(f"[Fixer] {len(missing)} new modules lack a manifest file")
        return fixes

    def _plan_type_fix(self, error: BuildError, context: MigrationContext) -> Optional[Fix]:
        match = TYPE_FIX_PATTERN.search(error.message)
        if not match:
            return None
        symbol = next(g for g in match.groups() if g)
        import_path = context.moved_symbols.get(symbol)
        if not import_path:
            self.logger.debug(f"[Fixer] No known relocation for symbol {symbol}")
            return None

        rel = self._relative(error.file)
        content = self._read(rel) if rel else None
        if content is None:
            return None

        if rel.endswith(".py"):
            updated = add_python_import(content, import_path, symbol)
            description = f"Import {symbol} from {import_path}"
        elif rel.endswith((".ts", ".tsx", ".js")):
            updated = add_ts_import(content, import_path, symbol)
            description = f"Import {symbol} from '{import_path}'"
        else:
            alias = import_alias(import_path)
            updated = qualify_go_symbol(content, import_path, alias, symbol)
            description = f"Update type reference for {symbol} to {alias}.{symbol}"

        if updated == content:
            return None
        self._working[rel] = updated
        return Fix(
            kind=FixKind.TYPE,
            file=rel,
            description=description,
            patch_body=updated,
            confidence=TYPE_CONFIDENCE,
        )

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply(self, fix: Fix) -> None:
        """Write one fix to disk.

        Config fixes may create their file; any other fix requires the file
        to exist and overwrites it with ``patch_body``.

        Raises:
            PatchApplicationError: If the path is outside the project or missing
            OSError: If the write fails
        """
        target = self._resolve_for_write(fix.file)
        if not target.exists() and fix.kind != FixKind.CONFIG:
            raise PatchApplicationError(f"Cannot fix missing file: {fix.file}", path=fix.file)
        if self.dry_run:
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(fix.patch_body, encoding="utf-8")

    def fix(self, errors: List[BuildError], context: MigrationContext) -> FixResult:
        """Plan, apply and (when dependency errors were seen) tidy once.

        Apply failures are recorded per fix; remaining fixes are still tried.
        """
        fixes = self.plan(errors, context)
        result = FixResult(fixes=fixes)

        for fix in fixes:
            try:
                self.apply(fix)
                result.applied_fixes.append(fix)
                self.logger.info(
                    f"[Fixer] Applied {fix.kind.value} fix to {fix.file} "
                    f"(confidence {fix.confidence:.2f}): {fix.description}"
                )
            except (PatchApplicationError, OSError) as e:
                result.failed_fixes.append((fix, str(e)))
                self.logger.warning(f"[Fixer] Failed to apply fix to {fix.file}: {e}")

        if self.needs_tidy(errors) and not self.dry_run:
            result.tidy_ran = self.run_tidy()
        return result

    def run_tidy(self) -> bool:
        """Run the dependency consolidation command once.

        Returns:
            True when the command was executed (its exit status is logged only)
        """
        command = self.config.tidy_command
        if not command:
            return False
        self.logger.info(f"[Fixer] Running tidy pass: {command}")
        result = self._run(command, cwd=self.project_path, timeout=self.config.build_timeout_seconds)
        if result.not_found:
            self.logger.warning(f"[Fixer] Tidy command not available: {command}")
            return False
        if not result.ok:
            self.logger.warning(f"[Fixer] Tidy pass failed: {result.stderr.strip()[:500]}")
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _relative(self, file: Optional[str]) -> Optional[str]:
        if not file:
            return None
        path = Path(file)
        if not path.is_absolute():
            path = self.project_path / path
        try:
            return path.resolve().relative_to(self.project_path).as_posix()
        except ValueError:
            return None

    def _resolve_for_write(self, rel: str) -> Path:
        resolved = (self.project_path / rel).resolve()
        try:
            relative = resolved.relative_to(self.project_path)
        except ValueError:
            raise PatchApplicationError(f"Fix path escapes project root: {rel}", path=rel)
        first = relative.parts[0] if relative.parts else ""
        if first in (".git", self.state_dir_name):
            raise PatchApplicationError(f"Protected path: {rel}", path=rel)
        return resolved

    def _read(self, rel: str) -> Optional[str]:
        if rel in self._working:
            return self._working[rel]
        path = self.project_path / rel
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            self.logger.debug(f"[Fixer] Could not read {rel}: {e}")
            return None

    def _files_referencing(self, old_path: str) -> List[str]:
        """Source files that mention an import path, for errors without a file."""
        extensions = tuple(self.config.source_extensions)
        matches = []
        for root, dirs, files in os.walk(self.project_path):
            dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS and d != self.state_dir_name)
            for name in sorted(files):
                if not name.endswith(extensions):
                    continue
                rel = (Path(root) / name).relative_to(self.project_path).as_posix()
                content = self._read(rel)
                if content and old_path in content:
                    matches.append(rel)
        return matches

    def _module_manifest_path(self, module: NewModule) -> Optional[str]:
        base = module.path.strip("/").rstrip("/")
        filename = {"go": "go.mod", "python": "__init__.py", "typescript": "package.json"}.get(
            self.config.language
        )
        if filename is None:
            return None
        return f"{base}/{filename}" if base and base != "." else filename

    def _module_manifest_content(self, module: NewModule) -> str:
        if self.config.language == "go":
            return generate_go_mod(module.name)
        if self.config.language == "typescript":
            return (
                "{\n"
                f'  "name": "{module.name}",\n'
                '  "version": "0.0.0",\n'
                '  "private": true\n'
                "}\n"
            )
        return f'"""{module.name} package."""\n'

    @staticmethod
    def _extract_import_path(message: str) -> Optional[str]:
        for pattern in (_QUOTED_RE, _PROVIDES_RE, _NO_MODULE_RE):
            match = pattern.search(message)
            if match:
                return match.group(1).strip("'\"")
        return None


def rewrite_import(content: str, old_path: str, new_path: str, python: bool = False) -> str:
    """Rewrite every import of ``old_path`` (and its sub-paths) to ``new_path``."""
    old = re.escape(old_path)
    if python:
        content = re.sub(rf"(\bimport\s+){old}(?![\w])", rf"\g<1>{new_path}", content)
        return re.sub(rf"(\bfrom\s+){old}(?![\w])", rf"\g<1>{new_path}", content)
    return re.sub(
        rf"([\"'`]){old}(/[^\"'`]*)?\1",
        lambda m: f"{m.group(1)}{new_path}{m.group(2) or ''}{m.group(1)}",
        content,
    )


def import_alias(import_path: str) -> str:
    """Alias for an import path: its last segment as an identifier."""
    last = re.split(r"[/.]", import_path.rstrip("/"))[-1]
    alias = re.sub(r"\W", "_", last)
    if not alias or alias[0].isdigit():
        alias = f"pkg_{alias}"
    return alias


def add_go_import(content: str, import_statement: str) -> str:
    """Add an import line to a Go file's import block, or after the package clause."""
    block = re.search(r"import\s*\([^)]*\)", content, re.DOTALL)
    if block:
        updated_block = block.group(0)[:-1].rstrip() + f"\n\t{import_statement}\n)"
        return content[: block.start()] + updated_block + content[block.end() :]
    return re.sub(
        r"^package\s+\w+$",
        lambda m: f"{m.group(0)}\n\nimport {import_statement}",
        content,
        count=1,
        flags=re.MULTILINE,
    )


def qualify_go_symbol(content: str, import_path: str, alias: str, symbol: str) -> str:
    """Import ``import_path`` as ``alias`` and qualify bare uses of ``symbol``.

    Only type and expression positions are rewritten. Declared names (struct
    fields, ``type``/``func`` names), composite-literal keys, string and rune
    literals and comments are left alone.
    """
    if f'"{import_path}"' not in content:
        content = add_go_import(content, f'{alias} "{import_path}"')
    name = re.escape(symbol)
    usage = re.compile(rf"(?<![\w.]){name}\b")
    declared = re.compile(
        rf"\s*(?:({name})\s+[\w*\[<]|(?:type|func)\s+(?:\([^)]*\)\s*)?({name})\b)"
    )

    lines = []
    for line in content.splitlines(keepends=True):
        if f'"{import_path}"' in line:
            lines.append(line)
            continue
        skipped = [m.span() for m in _GO_LITERAL_RE.finditer(line)]
        match = declared.match(line)
        if match:
            group = 1 if match.group(1) else 2
            skipped.append(match.span(group))
        lines.append(usage.sub(lambda m: _qualified(m, line, skipped, alias), line))
    return "".join(lines)


def _qualified(match: re.Match, line: str, skipped: List[tuple], alias: str) -> str:
    if any(start <= match.start() < end for start, end in skipped):
        return match.group(0)
    # "X:" is a composite-literal key or label, except in a type switch case
    if re.match(r"\s*:(?!=)", line[match.end() :]) and not _GO_CASE_RE.search(
        line[: match.start()]
    ):
        return match.group(0)
    return f"{alias}.{match.group(0)}"


def add_python_import(content: str, module: str, symbol: str) -> str:
    statement = f"from {module} import {symbol}"
    if re.search(rf"^{re.escape(statement)}\b", content, re.MULTILINE):
        return content
    lines = content.splitlines(keepends=True)
    insert_at = 0
    for i, line in enumerate(lines):
        if re.match(r"(import|from)\s+\S+", line):
            insert_at = i + 1
    lines.insert(insert_at, statement + "\n")
    return "".join(lines)


def add_ts_import(content: str, module: str, symbol: str) -> str:
    statement = f"import {{ {symbol} }} from '{module}';"
    if statement in content:
        return content
    lines = content.splitlines(keepends=True)
    insert_at = 0
    for i, line in enumerate(lines):
        if line.startswith("import "):
            insert_at = i + 1
    lines.insert(insert_at, statement + "\n")
    return "".join(lines)


def generate_go_mod(module_name: str, go_version: str = "1.21") -> str:
    return f"module {module_name}\n\ngo {go_version}\n"


def add_replace_directives(go_mod: str, modules: List[NewModule]) -> str:
    """Add ``replace name => ./path`` lines for modules that lack one."""
    needed = []
    for module in modules:
        if re.search(rf"^replace\s+{re.escape(module.name)}\s", go_mod, re.MULTILINE):
            continue
        path = module.path.strip("/")
        needed.append(f"replace {module.name} => ./{path}")
    if not needed:
        return go_mod

    block = "\n".join(needed)
    if re.search(r"^replace", go_mod, re.MULTILINE):
        return re.sub(r"^replace", lambda m: f"{block}\n\nreplace", go_mod, count=1, flags=re.MULTILINE)
    return go_mod.rstrip("\n") + f"\n\n{block}\n"
