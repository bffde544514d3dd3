"""Agent teams: implementer and reviewer prompts kept as editable templates.

A team is a directory under the teams root holding ``implementer.md`` and
``reviewer.md``, both Jinja2 templates. The implementer template receives
``spec`` and ``feedback`` (None on the first iteration); the reviewer template
receives ``spec`` and ``handoff``. ``rl init`` writes the built-in teams.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import jinja2

from review_loop.core import prompts
from review_loop.core.errors import PromptFormattingError, TeamError, TeamNotFoundError
from review_loop.db.models import AgentResult

logger = logging.getLogger(__name__)

ROLE_FILES = {
    "implementer": "implementer.md",
    "reviewer": "reviewer.md",
}

_env = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


_IMPLEMENTER_HEAD = """\
You are the IMPLEMENTER. A REVIEWER agent reads your final message as your
handoff and decides whether the work ships.
{% if feedback %}
## Reviewer feedback from the previous iteration
{{ feedback }}

Address every point above before anything else.
{% endif %}
## Specification
{{ spec }}

## Approach
"""

_IMPLEMENTER_TAIL = """
## Handoff
Do not open a pull request; the reviewer does that.
Finish with what you implemented, the files you changed, the commands you ran
with their results, and anything still open.
"""

_REVIEWER_HEAD = """\
You are the REVIEWER. Check the IMPLEMENTER's work in this worktree and decide
whether it ships.

## Specification
{{ spec }}

## Implementer handoff
{{ handoff }}

## What to check
"""

_REVIEWER_TAIL = """
## Decision
If the work is complete and every check passes, commit it, push the branch,
open a pull request with `gh pr create` and reply APPROVED with its URL.
Otherwise reply CHANGES REQUESTED followed by specific feedback with file:line
references. The implementer receives it verbatim.
"""

_FOCUS = {
    "standard": (
        "- Read the surrounding code first and follow its structure and naming.\n"
        "- Keep modules small with one responsibility each; make dependencies explicit.\n"
        "- Handle the error paths the specification implies, not only the happy path.\n"
        "- Add tests for the new behaviour and run the test, lint and build commands.\n",
        "- Run the tests, linters and build yourself; do not trust the handoff.\n"
        "- Compare the change against every requirement in the specification.\n"
        "- Look for missing error handling, unclear names and duplicated logic.\n",
    ),
    "tdd": (
        "- Write a failing test for each requirement before the code that satisfies it.\n"
        "- Make each change as small as the next passing test allows, then refactor.\n"
        "- Run the whole suite after every change and keep it green.\n",
        "- Confirm every requirement has a test and that each test fails without its code.\n"
        "- Run the suite yourself and check edge cases and error scenarios are covered.\n"
        "- Reject tests that only assert on mocks or restate the implementation.\n",
    ),
    "frontend": (
        "- Reuse the existing components, styles and state management.\n"
        "- Cover keyboard navigation, focus order and labels for assistive technology.\n"
        "- Handle loading, empty and error states for every view you touch.\n"
        "- Add component tests and run the build so bundling errors surface.\n",
        "- Build the app and exercise the changed screens at narrow and wide widths.\n"
        "- Check accessibility: semantic markup, contrast, focus handling.\n"
        "- Look for unnecessary re-renders and oversized bundles.\n",
    ),
    "smart-contract": (
        "- Follow checks-effects-interactions and guard every external call.\n"
        "- Validate inputs and access control on every state-changing function.\n"
        "- Emit events for state changes and keep storage writes to a minimum.\n"
        "- Write tests for reverts, boundary values and permission failures.\n",
        "- Look for reentrancy, overflow, unchecked return values and privilege escalation.\n"
        "- Check gas usage of loops and storage access.\n"
        "- Run the test suite and any static analysis the project configures.\n",
    ),
}

DEFAULT_TEAMS = {
    name: {
        "implementer": _IMPLEMENTER_HEAD + impl + _IMPLEMENTER_TAIL,
        "reviewer": _REVIEWER_HEAD + review + _REVIEWER_TAIL,
    }
    for name, (impl, review) in _FOCUS.items()
}


@dataclass
class Team:
    name: str
    path: Path
    implementer: jinja2.Template
    reviewer: jinja2.Template


def load_team_dir(path: Path) -> Team:
    """Compile the role templates in one team directory. Raises TeamError."""
    templates = {}
    for role, filename in ROLE_FILES.items():
        source = path / filename
        if not source.is_file():
            raise TeamError(f"Team '{path.name}' has no {filename}")
        try:
            templates[role] = _env.from_string(source.read_text(encoding="utf-8"))
        except jinja2.TemplateSyntaxError as e:
            raise TeamError(f"{source}, line {e.lineno}: {e.message}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise TeamError(f"Cannot read {source}: {e}") from e
    return Team(name=path.name, path=path, **templates)


def _teams_root(teams_dir: str | Path) -> Path:
    root = Path(teams_dir).expanduser()
    if not root.is_dir():
        raise TeamError(f"Teams directory not found: {root}. Run 'rl init' to create it.")
    return root


def load_all_teams(teams_dir: str | Path) -> dict[str, Team]:
    """Load every valid team. Broken teams are logged and skipped."""
    teams = {}
    for path in sorted(_teams_root(teams_dir).iterdir()):
        if not path.is_dir():
            continue
        try:
            teams[path.name] = load_team_dir(path)
        except TeamError as e:
            logger.warning("Skipping team %s: %s", path.name, e)
    return teams


def load_team(teams_dir: str | Path, name: str) -> Team:
    root = _teams_root(teams_dir)
    path = root / name
    if not name or path.parent != root or not path.is_dir():
        raise TeamNotFoundError(name, list_teams(root))
    return load_team_dir(path)


def list_teams(teams_dir: str | Path) -> list[str]:
    try:
        return sorted(load_all_teams(teams_dir))
    except TeamError:
        return []


def write_default_teams(teams_dir: str | Path, force: bool = False) -> list[Path]:
    """Write the built-in teams. Existing files are kept unless ``force``."""
    root = Path(teams_dir).expanduser()
    written = []
    for name, roles in DEFAULT_TEAMS.items():
        team_dir = root / name
        team_dir.mkdir(parents=True, exist_ok=True)
        for role, filename in ROLE_FILES.items():
            path = team_dir / filename
            if path.exists() and not force:
                logger.debug("Keeping existing %s", path)
                continue
            path.write_text(roles[role], encoding="utf-8")
            written.append(path)
    return written


class TemplatePromptFormatter:
    """PromptFormatter that renders a team's templates."""

    def __init__(self, team: Team):
        self.team = team

    def format_implementer(self, spec: str, feedback: str | None = None) -> str:
        if not spec or not spec.strip():
            raise PromptFormattingError("Specification content cannot be empty")
        return self._render("implementer", spec=spec, feedback=feedback or None)

    def format_reviewer(self, spec: str, handoff: str) -> str:
        if not spec or not spec.strip():
            raise PromptFormattingError("Original specification cannot be empty")
        if not handoff or not handoff.strip():
            raise PromptFormattingError("Implementer handoff cannot be empty")
        return self._render("reviewer", spec=spec, handoff=handoff)

    def extract_handoff(self, result: AgentResult) -> str:
        return prompts.extract_handoff(result)

    def reviewer_signaled_completion(self, text: str | None) -> bool:
        return prompts.reviewer_signaled_completion(text)

    def _render(self, role: str, **context) -> str:
        template = getattr(self.team, role)
        try:
            return template.render(**context)
        except jinja2.TemplateError as e:
            raise PromptFormattingError(
                f"Team '{self.team.name}' {role} template failed: {e}"
            ) from e
