"""/info command."""

from importlib.metadata import PackageNotFoundError, version

from nyaagent.plugins.base import (
    Plugin,
    PluginCapability,
    PluginContext,
    PluginManifest,
)


def app_version() -> str:
    try:
        return version("nyaagent")
    except PackageNotFoundError:
        return "0.0.0"


class InfoPlugin(Plugin):
    manifest = PluginManifest(
        id="builtin.info",
        name="Project info",
        author="NyaDeskPet",
        description="Shows project name, version and author",
        capabilities=(PluginCapability.COMMAND,),
    )

    def on_load(self, context: PluginContext) -> None:
        super().on_load(context)

        async def info(_args: str) -> str:
            return "\n".join(
                [
                    "NyaDeskPet",
                    f"Version: {app_version()}",
                    "Author: gameswu",
                    "Repository: https://github.com/gameswu/NyaDeskPetAPP",
                    "Description: Live2D desktop pet with an AI agent",
                ]
            )

        context.register_command("info", "Show project info", info)
