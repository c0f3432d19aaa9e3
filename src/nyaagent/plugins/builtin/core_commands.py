"""Built-in slash commands: /clear, /history, /model and /help."""

from nyaagent.plugins.base import (
    Plugin,
    PluginCapability,
    PluginContext,
    PluginManifest,
)


class CoreCommandsPlugin(Plugin):
    manifest = PluginManifest(
        id="builtin.core-commands",
        name="Core commands",
        author="NyaDeskPet",
        description="Basic slash commands: /clear, /history, /model, /help",
        capabilities=(PluginCapability.COMMAND,),
    )

    def on_load(self, context: PluginContext) -> None:
        super().on_load(context)

        async def clear(_args: str) -> str:
            context.clear_conversation_history()
            return "Conversation history cleared"

        async def history(_args: str) -> str:
            entries = context.get_conversation_history()
            if not entries:
                return "Conversation history is empty"
            return "\n".join(
                f"{i}. [{role}] {content[:50]}" for i, (role, content) in enumerate(entries, 1)
            )

        async def model(_args: str) -> str:
            info = context.get_primary_provider_info()
            if info is None:
                return "No LLM provider configured"
            return "\n".join(
                [
                    f"Primary LLM provider: {info.display_name}",
                    f"Type: {info.provider_id}",
                    f"Model: {info.model or 'not set'}",
                    f"Status: {info.status}",
                ]
            )

        async def help_(_args: str) -> str:
            commands = context.get_all_command_definitions()
            if not commands:
                return "No commands available"
            return "\n".join(f"/{name} — {description}" for name, description in commands)

        context.register_command("clear", "Clear conversation history", clear)
        context.register_command("history", "Show conversation history", history)
        context.register_command("model", "Show the current model", model)
        context.register_command("help", "Show available commands", help_)
