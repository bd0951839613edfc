"""
Field links between module instances of one workspace.

A link makes `instance.field` read its value from another instance's field or
computed output (`out.<name>`). Resolution is transitive: the target may
itself be linked. The link graph is resolved with a memoized depth-first walk
over (instance_id, name) nodes. A node met again while still on the walk
stack closes a cycle, and every node on that cycle resolves to a BrokenValue
instead of raising, so one bad link never aborts the workspace.

A link is broken when:
    missing_instance   the target instance is not in the workspace
    missing_target     the target module no longer defines the field/output
    cycle              the node is part of a link cycle
    target_failed      the target computed output could not be evaluated
    upstream_broken    the link leads (transitively) to a broken link
"""

import logging
from typing import Iterable, Optional, Union

from .catalog import Catalog
from .computed_outputs import evaluate_computed_outputs, output_dependencies
from .errors import ErrorKind
from .formula.evaluator import BrokenValue
from .schemas import (
    COMPUTED_PREFIX,
    BrokenLinkInfo,
    CalculationModule,
    ComputedOutput,
    Field,
    LinkCheck,
    LinkOption,
    ModuleInstance,
)

logger = logging.getLogger(__name__)

Node = tuple[str, str]   # (instance_id, field name or out.<output>)


def _node_label(node: Node) -> str:
    return f"{node[0]}.{node[1]}"


def _link_target(module: CalculationModule, name: str) -> Union[Field, ComputedOutput, None]:
    if name.startswith(COMPUTED_PREFIX):
        return module.get_output(name)
    return module.get_field(name)


# --- Compatibility ---

def _units_match(a: Optional[str], b: Optional[str]) -> bool:
    if a and b:
        return a == b
    return True


def are_types_compatible(source: Field, target: Union[Field, ComputedOutput]) -> bool:
    """
    Can `source` take its value from `target`?

    Material and labor fields never link. Numbers link to numbers (and to
    computed outputs) when their unit categories agree or one has no unit.
    Booleans link to booleans. Dropdowns link to dropdowns of the same mode
    whose unit categories agree.
    """
    if source.is_catalog:
        return False
    if isinstance(target, ComputedOutput):
        return source.type == "number" and _units_match(source.unit_category, target.unit_category)
    if target.is_catalog:
        return False
    if source.type == "number" and target.type == "number":
        return _units_match(source.unit_category, target.unit_category)
    if source.type == "boolean" and target.type == "boolean":
        return True
    if source.type == "dropdown" and target.type == "dropdown":
        return (
            source.dropdown_mode == target.dropdown_mode
            and _units_match(source.unit_category, target.unit_category)
        )
    return False


# --- Cycle detection ---

def _link_graph(
    instances: Iterable[ModuleInstance],
    modules: dict[str, CalculationModule],
) -> dict[Node, list[Node]]:
    graph: dict[Node, list[Node]] = {}
    for instance in instances:
        for name, link in instance.field_links.items():
            graph.setdefault((instance.id, name), []).append(
                (link.target_instance_id, link.target_variable_name)
            )
        module = modules.get(instance.module_id)
        if module is None:
            continue
        # a computed output depends on the fields its expression chain reads
        for output in module.computed_outputs:
            deps = output_dependencies(module, output.variable_name)
            graph.setdefault((instance.id, output.key), []).extend((instance.id, f) for f in deps)
    return graph


def detect_circular_reference(
    instances: Iterable[ModuleInstance],
    modules: Iterable[CalculationModule],
    instance_id: str,
    field_name: str,
    target_instance_id: str,
    target_name: str,
) -> Optional[str]:
    """
    Would linking instance_id.field_name -> target close a cycle?

    Returns the cycle as "a.x → b.y → a.x", or None. The proposed link
    replaces any existing link on the source field.
    """
    instances = list(instances)
    module_map = {m.id: m for m in modules}
    graph = _link_graph(instances, module_map)
    source = (instance_id, field_name)
    graph[source] = [(target_instance_id, target_name)]

    visited: set[Node] = set()
    path: list[Node] = []

    def dfs(node: Node) -> Optional[str]:
        if node in path:
            cycle = path[path.index(node):] + [node]
            return " → ".join(_node_label(n) for n in cycle)
        if node in visited:
            return None
        visited.add(node)
        path.append(node)
        for neighbor in graph.get(node, ()):
            cycle = dfs(neighbor)
            if cycle:
                return cycle
        path.pop()
        return None

    return dfs(source)


def can_link_fields(
    instances: Iterable[ModuleInstance],
    modules: Iterable[CalculationModule],
    instance_id: str,
    field_name: str,
    target_instance_id: str,
    target_name: str,
) -> LinkCheck:
    """Validate a proposed link before it is stored."""
    instances = list(instances)
    modules = list(modules)

    def reject(message: str) -> LinkCheck:
        return LinkCheck(valid=False, error=message, error_kind=ErrorKind.INCOMPATIBLE_LINK)

    if instance_id == target_instance_id and field_name == target_name:
        return reject("Cannot link field to itself")

    source_instance = next((i for i in instances if i.id == instance_id), None)
    target_instance = next((i for i in instances if i.id == target_instance_id), None)
    if source_instance is None:
        return reject("Source module instance not found")
    if target_instance is None:
        return reject("Target module instance not found")

    module_map = {m.id: m for m in modules}
    source_module = module_map.get(source_instance.module_id)
    target_module = module_map.get(target_instance.module_id)
    if source_module is None or target_module is None:
        return reject("Module definition not found")

    source = source_module.get_field(field_name)
    if source is None:
        return reject("Source field not found")
    target = _link_target(target_module, target_name)
    if target is None:
        if target_name.startswith(COMPUTED_PREFIX):
            return reject("Target computed output not found")
        return reject("Target field not found")

    if not are_types_compatible(source, target):
        target_type = "computed output" if isinstance(target, ComputedOutput) else f"{target.type} field"
        message = f"Cannot link {source.type} field to {target_type}"
        if source.unit_category and target.unit_category and source.unit_category != target.unit_category:
            message += f" ({source.unit_category} vs {target.unit_category})"
        return reject(message)

    cycle = detect_circular_reference(
        instances, modules, instance_id, field_name, target_instance_id, target_name
    )
    if cycle:
        return reject(f"Circular reference detected: {cycle}")
    return LinkCheck(valid=True)


# --- Resolution ---

class FieldLinkResolver:
    """
    Resolves every field of a workspace in one pass.

    Not reusable across workspace edits: build a new resolver per recompute.
    """

    def __init__(
        self,
        instances: Iterable[ModuleInstance],
        modules: Iterable[CalculationModule],
        catalog: Optional[Catalog] = None,
        functions=None,
    ):
        self.instances: dict[str, ModuleInstance] = {i.id: i for i in instances}
        self.modules: dict[str, CalculationModule] = {m.id: m for m in modules}
        self.catalog = catalog or Catalog()
        self.functions = functions
        self.broken: dict[Node, BrokenLinkInfo] = {}
        self._resolved: dict[Node, object] = {}
        self._stack: list[Node] = []
        self._cyclic: set[Node] = set()

    def resolve_all(self) -> dict[str, dict[str, object]]:
        values: dict[str, dict[str, object]] = {}
        for instance in self.instances.values():
            names = list(instance.field_values) + [n for n in instance.field_links if n not in instance.field_values]
            module = self.modules.get(instance.module_id)
            if module is not None:
                names += [f.variable_name for f in module.fields if f.variable_name not in names]
            # computed outputs are never stored values; they resolve only as link targets
            names = [n for n in names if not n.startswith(COMPUTED_PREFIX)]
            values[instance.id] = {name: self.resolve(instance.id, name) for name in names}
        return values

    def resolve(self, instance_id: str, name: str):
        node = (instance_id, name)
        if node in self._resolved:
            return self._resolved[node]
        if node in self._stack:
            cycle = self._stack[self._stack.index(node):]
            self._cyclic.update(cycle)
            logger.warning(
                "Link cycle detected: %s", " → ".join(_node_label(n) for n in cycle + [node])
            )
            return BrokenValue("cycle")

        self._stack.append(node)
        try:
            if name.startswith(COMPUTED_PREFIX):
                value = self._resolve_output(instance_id, name)
            else:
                value = self._resolve_field(instance_id, name)
        finally:
            self._stack.pop()

        if node in self._cyclic and not isinstance(value, BrokenValue):
            value = BrokenValue("cycle")
        self._resolved[node] = value
        return value

    def _resolve_field(self, instance_id: str, name: str):
        instance = self.instances[instance_id]
        own_value = instance.field_values.get(name)
        link = instance.field_links.get(name)
        if link is None:
            return own_value

        node = (instance_id, name)
        target_instance = self.instances.get(link.target_instance_id)
        target_module = self.modules.get(target_instance.module_id) if target_instance else None
        if target_instance is None:
            reason = "missing_instance"
        elif target_module is None or _link_target(target_module, link.target_variable_name) is None:
            reason = "missing_target"
        else:
            value = self.resolve(link.target_instance_id, link.target_variable_name)
            if not isinstance(value, BrokenValue):
                if node in self._cyclic:
                    reason = "cycle"
                else:
                    return value
            elif node in self._cyclic:
                reason = "cycle"
            elif link.target_variable_name.startswith(COMPUTED_PREFIX) and value.reason == "target_failed":
                reason = "target_failed"
            else:
                reason = "upstream_broken"

        self.broken[node] = BrokenLinkInfo(
            instance_id=instance_id,
            field_name=name,
            target_instance_id=link.target_instance_id,
            target_variable_name=link.target_variable_name,
            reason=reason,
        )
        if reason != "cycle":
            logger.warning(
                "Broken link %s -> %s.%s (%s)",
                _node_label(node), link.target_instance_id, link.target_variable_name, reason,
            )
        return BrokenValue(reason, own_value)

    def _resolve_output(self, instance_id: str, name: str):
        instance = self.instances[instance_id]
        module = self.modules.get(instance.module_id)
        output = module.get_output(name) if module is not None else None
        if output is None:
            return BrokenValue("missing_target")

        values = dict(instance.field_values)
        for field_name in output_dependencies(module, output.variable_name):
            values[field_name] = self.resolve(instance_id, field_name)

        result = evaluate_computed_outputs(
            module, values, catalog=self.catalog, functions=self.functions
        )
        if output.key in result.computed_values:
            return result.computed_values[output.key]
        return BrokenValue("target_failed")


def resolve_field_links(
    instances: Iterable[ModuleInstance],
    modules: Iterable[CalculationModule],
    catalog: Optional[Catalog] = None,
    functions=None,
    materials=(),
    labor=(),
) -> tuple[dict[str, dict[str, object]], list[BrokenLinkInfo]]:
    """
    Resolved value of every field of every instance.

    Returns ({instance_id: {field: value}}, broken links). Broken fields hold
    a BrokenValue carrying the reason and the instance's own stored value.
    """
    resolver = FieldLinkResolver(
        instances, modules, Catalog.coerce(catalog, materials, labor), functions
    )
    values = resolver.resolve_all()
    return values, list(resolver.broken.values())


# --- Link status for the editor ---

def _find_target(instance: ModuleInstance, field_name: str, instances, modules):
    link = instance.field_links.get(field_name)
    if link is None:
        return None, None, None
    target_instance = next((i for i in instances if i.id == link.target_instance_id), None)
    if target_instance is None:
        return link, None, None
    module = next((m for m in modules if m.id == target_instance.module_id), None)
    if module is None:
        return link, None, None
    return link, module, _link_target(module, link.target_variable_name)


def is_link_broken(
    instance: ModuleInstance,
    field_name: str,
    instances: Iterable[ModuleInstance],
    modules: Iterable[CalculationModule],
) -> bool:
    """True when the field is linked and its direct target no longer exists."""
    link, _, target = _find_target(instance, field_name, list(instances), list(modules))
    return link is not None and target is None


def get_link_display_name(
    instance: ModuleInstance,
    field_name: str,
    instances: Iterable[ModuleInstance],
    modules: Iterable[CalculationModule],
) -> str:
    link, module, target = _find_target(instance, field_name, list(instances), list(modules))
    if link is None:
        return ""
    if target is None:
        return "source unavailable"
    if isinstance(target, ComputedOutput):
        unit = f" ({target.unit_symbol})" if target.unit_symbol else ""
        return f"{module.name} — Computed: {target.label}{unit}"
    return f"{module.name} — {target.label}"


def build_link_options(
    instance: ModuleInstance,
    field_name: str,
    instances: Iterable[ModuleInstance],
    modules: Iterable[CalculationModule],
) -> list[LinkOption]:
    """Every field and computed output of other instances this field may link to."""
    instances = list(instances)
    modules = list(modules)
    module_map = {m.id: m for m in modules}
    options: list[LinkOption] = []
    for other in instances:
        if other.id == instance.id:
            continue
        module = module_map.get(other.module_id)
        if module is None:
            continue
        targets = [(f.variable_name, f.label) for f in module.fields if not f.is_catalog]
        for output in module.computed_outputs:
            unit = f" ({output.unit_symbol})" if output.unit_symbol else ""
            targets.append((output.key, f"Computed: {output.label}{unit}"))
        for name, label in targets:
            check = can_link_fields(instances, modules, instance.id, field_name, other.id, name)
            if check.valid:
                options.append(LinkOption(
                    value=f"{other.id}.{name}",
                    label=f"{module.name} — {label}",
                    instance_id=other.id,
                    variable_name=name,
                ))
    return options
