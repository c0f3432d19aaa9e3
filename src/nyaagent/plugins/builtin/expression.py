"""Expression plugin: a separate LLM call turns reply text into Live2D commands."""

from __future__ import annotations

import json
import re
from typing import Any

from nyaagent.plugins.base import (
    ConfigFieldDef,
    ConfigFieldType,
    Live2DCommand,
    ModelInfo,
    Plugin,
    PluginConfigSchema,
    PluginManifest,
)
from nyaagent.providers.base import ChatMessage, LLMRequest, ProviderStatus

MAX_RETRIES = 1

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

OUTPUT_FORMAT = """## Output format

Output one JSON object shaped like this:

```json
{
  "expression": "short description of the emotion",
  "actions": [
    {"type": "parameter", "parameterId": "parameter name", "value": 0.5},
    {"type": "expression", "expressionId": "expression name"},
    {"type": "motion", "group": "motion name"}
  ]
}
```

### Rules
- parameterId / expressionId / group must be names from the lists above
- a parameter value must lie within that parameter's min ~ max range
- transition durations are computed automatically; do not specify them
- several parameters can be combined into a rich expression
- prefer parameters; use expression and motion only when really needed
- for flat emotional text, output few parameters or an empty actions array
- output JSON only, nothing else"""

STATIC_EXAMPLES = """## Examples

Dialogue text: "Hehe, I'm getting a little sleepy~"
```json
{
  "expression": "sleepy smile",
  "actions": [
    {"type": "parameter", "parameterId": "ParamAngleZ", "value": 15},
    {"type": "parameter", "parameterId": "ParamEyeLOpen", "value": 0.3},
    {"type": "parameter", "parameterId": "ParamEyeROpen", "value": 0.3},
    {"type": "parameter", "parameterId": "ParamMouthForm", "value": 0.8}
  ]
}
```

Dialogue text: "Okay, got it."
```json
{"expression": "calm", "actions": []}
```"""


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def build_expression_prompt(info: ModelInfo) -> str:
    sections = [
        "You control the expressions of a Live2D model. Generate suitable Live2D commands "
        "from the emotion and meaning of the dialogue text.\n\n"
        "You must output exactly one JSON object and nothing else."
    ]
    capabilities = ["## Available controls"]
    if info.mapped_expressions:
        listing = "\n".join(f"  - {e.alias}: {e.description}" for e in info.mapped_expressions)
        capabilities.append(f"\n**Preset expressions**:\n{listing}")
    elif info.expressions:
        capabilities.append(f"\n**Preset expressions**: {', '.join(info.expressions)}")
    if info.mapped_motions:
        listing = "\n".join(f"  - {m.alias}: {m.description}" for m in info.mapped_motions)
        capabilities.append(f"\n**Motions**:\n{listing}")
    elif info.motions:
        listing = "\n".join(f"  - {group} ({count} variants)" for group, count in info.motions.items())
        capabilities.append(f"\n**Motion groups**:\n{listing}")
    if info.mapped_parameters:
        listing = "\n".join(
            f"  - {p.alias}: {p.description} ({p.min} ~ {p.max}, default {p.default})"
            for p in info.mapped_parameters
        )
        capabilities.append(f"\n**Parameters** (preferred):\n{listing}")
    elif info.available_parameters:
        listing = "\n".join(
            f"  - {p.id}: {p.min} ~ {p.max} (default {p.default})" for p in info.available_parameters
        )
        capabilities.append(f"\n**Parameters** (preferred):\n{listing}")
    sections.append("".join(capabilities))
    sections.append(OUTPUT_FORMAT)
    sections.append(_examples(info))
    return "\n\n".join(sections)


def _examples(info: ModelInfo) -> str:
    if len(info.mapped_parameters) < 2:
        return STATIC_EXAMPLES
    actions = []
    for p in info.mapped_parameters[:4]:
        sample = _clamp(round(p.default + (p.max - p.min) * 0.3, 2), p.min, p.max)
        actions.append(
            json.dumps({"type": "parameter", "parameterId": p.alias, "value": sample})
        )
    body = ",\n    ".join(actions)
    return (
        "## Examples\n\n"
        'Dialogue text: "Hehe, I\'m getting a little sleepy~"\n'
        "```json\n"
        f'{{\n  "expression": "sleepy smile",\n  "actions": [\n    {body}\n  ]\n}}\n'
        "```\n\n"
        'Dialogue text: "Okay, got it."\n'
        "```json\n"
        '{"expression": "calm", "actions": []}\n'
        "```"
    )


def extract_json_object(raw: str) -> str:
    text = raw.strip()
    match = _CODE_BLOCK.search(text)
    if match:
        text = match.group(1).strip()
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        text = text[first : last + 1]
    return text


class ExpressionPlugin(Plugin):
    manifest = PluginManifest(
        id="builtin.expression",
        name="expression-generator",
        author="gameswu",
        description="LLM-driven Live2D expression generator",
    )
    config_schema = PluginConfigSchema(
        fields=(
            ConfigFieldDef(
                key="expressionProviderId",
                type=ConfigFieldType.STRING,
                description="LLM instance used for expressions; blank uses the primary.",
                default="",
            ),
            ConfigFieldDef(
                key="temperature",
                type=ConfigFieldType.FLOAT,
                description="Sampling temperature of the expression call.",
                default=0.7,
            ),
            ConfigFieldDef(
                key="maxTokens",
                type=ConfigFieldType.INT,
                description="Max output tokens of the expression call.",
                default=300,
            ),
            ConfigFieldDef(
                key="enabled",
                type=ConfigFieldType.BOOL,
                description="Generate expressions at all.",
                default=True,
            ),
        )
    )

    def __init__(self) -> None:
        self.provider_instance_id = ""
        self.temperature = 0.7
        self.max_tokens = 300
        self.expression_enabled = True
        super().__init__()

    def on_config_changed(self, config: dict[str, Any]) -> None:
        values = self.resolve_config(config)
        self.provider_instance_id = values["expressionProviderId"]
        self.temperature = values["temperature"]
        self.max_tokens = values["maxTokens"]
        self.expression_enabled = values["enabled"]

    def is_enabled(self) -> bool:
        return self.enabled and self.expression_enabled

    def resolve_provider_id(self) -> str | None:
        context = self.context
        if context is None:
            return None
        connected = ProviderStatus.CONNECTED.value
        if self.provider_instance_id.strip():
            for info in context.get_all_providers():
                if info.instance_id == self.provider_instance_id and info.status == connected:
                    return self.provider_instance_id
            context.log_warn(
                f'expression provider "{self.provider_instance_id}" unavailable, using primary'
            )
        primary = context.get_primary_provider_info()
        if primary is None or primary.status != connected or primary.provider_id == "echo":
            return None
        return "primary"

    async def generate_expression(
        self,
        dialogue_text: str,
        model_info: ModelInfo | None,
    ) -> list[Live2DCommand]:
        context = self.context
        if context is None or not self.is_enabled() or not dialogue_text.strip():
            return []
        if model_info is None:
            return []
        provider_id = self.resolve_provider_id()
        if provider_id is None:
            context.log_warn("no usable LLM provider, skipping expression generation")
            return []
        request = LLMRequest(
            messages=[ChatMessage(role="user", content=f'Dialogue text: "{dialogue_text}"')],
            system_prompt=build_expression_prompt(model_info),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await context.call_provider(provider_id, request)
            except Exception as exc:
                if attempt < MAX_RETRIES:
                    context.log_warn(f"expression call failed (attempt {attempt + 1}): {exc}")
                    continue
                context.log_error(f"expression generation failed: {exc}")
                return []
            commands = self.parse_and_validate(response.text, model_info)
            if not commands and attempt < MAX_RETRIES:
                context.log_warn(
                    f"expression output not usable (attempt {attempt + 1}/{MAX_RETRIES + 1})"
                )
                continue
            context.log_info(f"expression generated: {len(commands)} commands")
            return commands
        return []

    def _warn(self, message: str) -> None:
        if self.context is not None:
            self.context.log_warn(message)

    def parse_and_validate(self, raw: str, info: ModelInfo) -> list[Live2DCommand]:
        try:
            parsed = json.loads(extract_json_object(raw))
        except json.JSONDecodeError as exc:
            self._warn(f"expression JSON parse failed: {exc}")
            return []
        actions = parsed.get("actions") if isinstance(parsed, dict) else None
        if not isinstance(actions, list):
            return []

        params = {p.id: (p.id, p.min, p.max) for p in info.available_parameters}
        param_aliases = {p.alias: (p.id, p.min, p.max) for p in info.mapped_parameters}
        expressions = set(info.expressions)
        expression_aliases = {e.alias: e.id for e in info.mapped_expressions}
        motion_aliases = {m.alias: (m.group, m.index) for m in info.mapped_motions}

        commands: list[Live2DCommand] = []
        for action in actions:
            if not isinstance(action, dict):
                continue
            kind = action.get("type")
            if kind == "parameter":
                parameter_id = action.get("parameterId")
                value = action.get("value")
                if not isinstance(parameter_id, str) or isinstance(value, bool):
                    continue
                if not isinstance(value, int | float):
                    continue
                target = params.get(parameter_id) or param_aliases.get(parameter_id)
                if target is None:
                    self._warn(f'unknown parameter "{parameter_id}", skipped')
                    continue
                real_id, low, high = target
                commands.append(
                    Live2DCommand(
                        command="parameter",
                        parameter_id=real_id,
                        value=_clamp(float(value), low, high),
                        weight=1.0,
                    )
                )
            elif kind == "expression":
                expression_id = action.get("expressionId")
                if not isinstance(expression_id, str):
                    continue
                real = expression_id
                if real not in expressions:
                    real = expression_aliases.get(expression_id, expression_id)
                if real not in expressions:
                    self._warn(f'unknown expression "{expression_id}", skipped')
                    continue
                commands.append(Live2DCommand(command="expression", expression_id=real))
            elif kind == "motion":
                group = action.get("group")
                if not isinstance(group, str):
                    continue
                index = action.get("index")
                real_group, real_index = group, index if isinstance(index, int) else 0
                if group in motion_aliases:
                    real_group, real_index = motion_aliases[group]
                if real_group not in info.motions:
                    self._warn(f'unknown motion "{group}", skipped')
                    continue
                commands.append(
                    Live2DCommand(command="motion", group=real_group, index=real_index, priority=2)
                )
        return commands
