"""
Workflow definition registry.

Holds the known workflow types and validates each definition when it is
registered, so phase and gate names are a closed vocabulary per type and
typos surface at load time rather than mid-run.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

import yaml
from pydantic import ValidationError

from .errors import InvalidWorkflowTypeError, WorkflowDefinitionError
from .schema import WorkflowDef

logger = logging.getLogger(__name__)


def get_bundled_workflows_path() -> Path:
    """Path to the default_workflows.yaml shipped with the package."""
    bundled_path = Path(__file__).parent / 'default_workflows.yaml'
    if not bundled_path.exists():
        raise FileNotFoundError(
            "Bundled default_workflows.yaml not found. "
            "This may indicate a corrupted installation. "
            "Try reinstalling: pip install --force-reinstall phaseflow"
        )
    return bundled_path


def validate_definition(definition: WorkflowDef) -> list[str]:
    """
    Check a definition for structural problems.

    Returns:
        List of error messages (empty when the definition is usable)
    """
    errors = []
    phases = list(definition.phases)

    if not phases:
        errors.append("Workflow must declare at least one phase")
    dupes = sorted({p for p in phases if phases.count(p) > 1})
    if dupes:
        errors.append(f"Duplicate phases: {', '.join(dupes)}")
    for phase in phases:
        if not phase or not phase.strip():
            errors.append("Phase names must be non-empty")

    for name, gate in definition.approval_gates.items():
        after_idx = definition.phase_index(gate.after)
        before_idx = definition.phase_index(gate.before)
        if after_idx < 0:
            errors.append(f"Gate '{name}': unknown after phase '{gate.after}'")
        if before_idx < 0:
            errors.append(f"Gate '{name}': unknown before phase '{gate.before}'")
        if after_idx >= 0 and before_idx >= 0 and before_idx <= after_idx:
            errors.append(
                f"Gate '{name}': before phase '{gate.before}' must come after '{gate.after}'"
            )

    for key in definition.phase_durations:
        if definition.phase_index(key) < 0:
            errors.append(f"Duration given for unknown phase '{key}'")
    for key in definition.display_names:
        if definition.phase_index(key) < 0:
            errors.append(f"Display name given for unknown phase '{key}'")

    return errors


class WorkflowRegistry:
    """Known workflow types, keyed by name."""

    def __init__(self, definitions: Optional[Iterable[WorkflowDef]] = None):
        self._definitions: dict[str, WorkflowDef] = {}
        for definition in definitions or ():
            self.register(definition)

    @classmethod
    def default(cls, extra_files: Iterable[Union[str, Path]] = ()) -> "WorkflowRegistry":
        """Registry with the bundled types plus any extra YAML files."""
        registry = cls()
        registry.load_file(get_bundled_workflows_path())
        for path in extra_files:
            registry.load_file(path)
        return registry

    def register(self, definition: WorkflowDef) -> WorkflowDef:
        """
        Register a workflow definition.

        Raises:
            WorkflowDefinitionError: If the definition is malformed
        """
        errors = validate_definition(definition)
        if errors:
            raise WorkflowDefinitionError(
                f"Invalid workflow definition '{definition.name}': {'; '.join(errors)}",
                workflow_type=definition.name,
                errors=errors,
            )

        for phase in definition.phases:
            gates = definition.gates_after(phase)
            if len(gates) > 1:
                logger.warning(
                    f"Workflow '{definition.name}': gates {gates} all follow phase "
                    f"'{phase}'; only '{gates[0]}' will be used"
                )

        if definition.name in self._definitions:
            logger.info(f"Replacing workflow definition '{definition.name}'")
        self._definitions[definition.name] = definition
        return definition

    def load_file(self, path: Union[str, Path]) -> list[WorkflowDef]:
        """
        Load and register every workflow in a YAML file.

        The file holds a top-level `workflows` mapping of type name to
        definition.
        """
        path = Path(path)
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise WorkflowDefinitionError(f"Workflow file not found: {path}", path=str(path))
        except yaml.YAMLError as e:
            raise WorkflowDefinitionError(f"Invalid YAML syntax in {path}: {e}", path=str(path))

        if not isinstance(data, dict) or not isinstance(data.get('workflows'), dict):
            raise WorkflowDefinitionError(
                f"{path} must contain a top-level 'workflows' mapping",
                path=str(path),
            )

        loaded = []
        for name, body in data['workflows'].items():
            try:
                definition = WorkflowDef(**{**(body or {}), "name": name})
            except ValidationError as e:
                raise WorkflowDefinitionError(
                    f"Invalid workflow '{name}' in {path}: {e}",
                    path=str(path),
                    workflow_type=name,
                )
            loaded.append(self.register(definition))

        logger.debug(f"Loaded {len(loaded)} workflow definition(s) from {path}")
        return loaded

    def get(self, workflow_type: str) -> WorkflowDef:
        """
        Look up a workflow type.

        Raises:
            InvalidWorkflowTypeError: If the type is not registered
        """
        definition = self._definitions.get(workflow_type)
        if definition is None:
            raise InvalidWorkflowTypeError(
                f"Unknown workflow type: {workflow_type}. "
                f"Valid types are: {', '.join(self.types()) or '(none)'}",
                workflow_type=workflow_type,
                valid_types=self.types(),
            )
        return definition

    def types(self) -> list[str]:
        return list(self._definitions)

    def __contains__(self, workflow_type: str) -> bool:
        return workflow_type in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
