"""Prompt compilation for prompt chains.

A chain compiles to a single comma-separated prompt in a fixed order::

    [base], [active "pre" modules...], [subject], [active "post" modules...]

Modules keep their list order inside each group; a module whose position is
unset counts as "post".  Empty segments are skipped.

After joining, ``{placeholder}`` variables are substituted (missing values
become empty strings) and a cleanup pass removes the stray commas that empty
substitutions leave behind.  Cleanup is idempotent, so compiling an already
clean prompt returns it unchanged.

Usage
-----
::

    chain = PromptChain(
        base_prompt="masterpiece, {character}",
        modules=[PromptModule(content="cinematic lighting")],
    )
    compile_prompt(chain, "1girl", variables={"character": "catgirl"})
    # 'masterpiece, catgirl, 1girl, cinematic lighting'
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from chainlab.core.models import PromptChain, PromptModule

SEPARATOR = ", "

_PLACEHOLDER = re.compile(r"\{([a-zA-Z0-9_]+)\}")
_REPEATED_COMMAS = re.compile(r",(?:\s*,)+")
_LEADING_COMMA = re.compile(r"^\s*,\s*")
_TRAILING_COMMA = re.compile(r"\s*,\s*$")


def extract_variables(text: str) -> list[str]:
    """Return the distinct ``{name}`` placeholders in ``text``, in first-seen order."""
    return list(dict.fromkeys(_PLACEHOLDER.findall(text)))


def substitute_variables(text: str, variables: Mapping[str, str]) -> str:
    """Replace each placeholder with its value, or an empty string if unset."""
    return _PLACEHOLDER.sub(lambda match: variables.get(match.group(1)) or "", text)


def cleanup_prompt(text: str) -> str:
    """Collapse repeated commas and trim a leading/trailing comma."""
    text = _REPEATED_COMMAS.sub(",", text)
    text = _LEADING_COMMA.sub("", text)
    text = _TRAILING_COMMA.sub("", text)
    return text.strip()


def join_segments(segments: Iterable[str]) -> str:
    """Join the non-empty segments with ``", "`` and clean the result."""
    return cleanup_prompt(SEPARATOR.join(s for s in segments if s and s.strip()))


def effective_modules(
    modules: Iterable[PromptModule],
    active_overrides: Mapping[str, bool] | None = None,
) -> list[PromptModule]:
    """Return the modules that are active for this run.

    ``active_overrides`` maps module ids to a session toggle that takes
    precedence over the persisted ``is_active`` flag.
    """
    overrides = active_overrides or {}
    return [module for module in modules if overrides.get(module.id, module.is_active)]


def collect_variables(
    chain: PromptChain,
    active_overrides: Mapping[str, bool] | None = None,
) -> list[str]:
    """List the placeholders used by the base prompt and the active modules."""
    texts = [chain.base_prompt] + [
        module.content for module in effective_modules(chain.modules, active_overrides)
    ]
    return extract_variables(" ".join(texts))


def compile_prompt(
    chain: PromptChain,
    subject: str | None = None,
    variables: Mapping[str, str] | None = None,
    active_overrides: Mapping[str, bool] | None = None,
) -> str:
    """Compile a chain into the final prompt string.

    Args:
        chain: Chain supplying the base prompt and modules.
        subject: Subject segment placed between "pre" and "post" modules.
            Defaults to ``chain.subject``.
        variables: Placeholder values.  Defaults to ``chain.variable_values``.
        active_overrides: Per-session module toggles (module id -> active).

    Returns:
        The compiled, cleaned prompt.
    """
    if subject is None:
        subject = chain.subject
    if variables is None:
        variables = chain.variable_values

    active = effective_modules(chain.modules, active_overrides)

    segments: list[str] = []
    if chain.base_prompt:
        segments.append(chain.base_prompt)
    segments.extend(m.content for m in active if m.position == "pre" and m.content)
    if subject:
        segments.append(subject)
    segments.extend(m.content for m in active if m.position != "pre" and m.content)

    prompt = substitute_variables(SEPARATOR.join(segments), variables)
    return cleanup_prompt(prompt)
