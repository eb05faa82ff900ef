""" Built-in workflow templates shipped as YAML under workflow/templates/. """
import logging
import os
from functools import lru_cache
from typing import Dict, List

from ..errors import UnknownWorkflowError
from .compiler import load_workflow
from .models import WorkflowDefinition

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")


@lru_cache(maxsize=1)
def _load_all() -> Dict[str, WorkflowDefinition]:
    templates: Dict[str, WorkflowDefinition] = {}
    for filename in sorted(os.listdir(TEMPLATE_DIR)):
        if not filename.endswith((".yaml", ".yml")):
            continue
        with open(os.path.join(TEMPLATE_DIR, filename), "r") as f:
            definition = load_workflow(f.read())
        templates[definition.id] = definition
        logger.debug("Loaded template %s from %s", definition.id, filename)
    return templates


def get_template(template_id: str) -> WorkflowDefinition:
    templates = _load_all()
    if template_id not in templates:
        raise UnknownWorkflowError(f"Template not found: {template_id}")
    return templates[template_id]


def list_templates() -> List[WorkflowDefinition]:
    return list(_load_all().values())


def get_templates_by_category(category: str) -> List[WorkflowDefinition]:
    wanted = category.strip().lower()
    return [t for t in _load_all().values() if (t.category or "").lower() == wanted]


def get_template_categories() -> List[str]:
    return sorted({t.category for t in _load_all().values() if t.category})
