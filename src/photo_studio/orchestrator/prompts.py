"""Prompt templates for inference requests."""

from __future__ import annotations

import re
from collections.abc import Mapping

from photo_studio.orchestrator.models import TaskType, TaskView

_VARIABLE_RE = re.compile(r"\{([^{}]+)\}")

DEFAULT_TEMPLATES: dict[TaskType, str] = {
    TaskType.PHOTOGRAPHY: (
        "Professional fashion photograph of the garment worn by {model|a fashion model}, "
        "{pose|natural standing pose}, shot at {location|a bright studio}, "
        "{style|clean commercial style}."
    ),
    TaskType.FITTING: (
        "Dress the person from the first image in the garment from the second image. "
        "Keep face, body shape and {background|the original background} unchanged, "
        "{style|photorealistic}."
    ),
    TaskType.AVATAR: (
        "Portrait avatar of the person in the reference photos, {style|soft natural light}, "
        "{background|plain studio background}."
    ),
}


def render_template(
    template: str,
    parameters: Mapping[str, object],
    scene: Mapping[str, object] | None = None,
) -> str:
    """Substitute ``{name}``, ``{name|default}`` and ``{scene.prop}`` variables.

    ``location`` falls back to the scene name when not given explicitly.
    Unknown variables without a default render as an empty string.
    """

    scene = scene or {}

    def _replace(match: re.Match[str]) -> str:
        name, _, default = (part.strip() for part in match.group(1).partition("|"))
        if name.startswith("scene."):
            value = scene.get(name.removeprefix("scene."))
        elif name == "location":
            value = parameters.get("location") or scene.get("name") or scene.get("description")
        else:
            value = parameters.get(name)
        return str(value) if value not in (None, "") else default

    rendered = _VARIABLE_RE.sub(_replace, template)
    return " ".join(rendered.split())


def build_prompt(task: TaskView) -> str:
    """Explicit ``params.prompt`` wins; otherwise render the task type template."""

    explicit = str(task.params.get("prompt") or "").strip()
    if explicit:
        return explicit
    template = str(task.params.get("template") or DEFAULT_TEMPLATES[task.task_type])
    parameters = task.params.get("parameters") or {}
    scene = task.params.get("scene") or {}
    return render_template(template, parameters, scene)
