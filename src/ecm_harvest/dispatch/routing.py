"""Agent command template resolution per task type."""

from __future__ import annotations

from dataclasses import dataclass, field

from ecm_harvest.config import DispatchSettings, task_type_env_key
from ecm_harvest.dispatch.models import AgentDescriptor


@dataclass(slots=True)
class AgentCatalog:
    """Maps task types to the agent command that serves them."""

    default_template: str = ""
    templates: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> AgentCatalog:
        return cls(
            default_template=settings.agent_command_template.strip(),
            templates={
                task_type_env_key(task_type): template.strip()
                for task_type, template in settings.agent_command_templates.items()
            },
        )

    def resolve(self, task_type: str) -> AgentDescriptor:
        """Return the per-type template if configured, else the default one."""

        key = task_type_env_key(task_type)
        template = self.templates.get(key) or self.default_template
        if not template:
            raise ValueError(
                f"No agent command template for task type {task_type!r}. "
                f"Set ECM_HARVEST_AGENT_COMMAND_TEMPLATE_{key} "
                "or ECM_HARVEST_AGENT_COMMAND_TEMPLATE.",
            )
        return AgentDescriptor(name=task_type, command_template=template)
