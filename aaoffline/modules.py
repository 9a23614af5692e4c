"""Player script modules and their dependency resolution.

Each player module declares itself with

    Modules.load(new Object({
        name : 'x',
        dependencies : ['a', 'b'],
        init : function() { ... }
    }));

The resolver fetches `player` and, round by round, every dependency not
yet fetched. combine_modules() then emits the modules so that each one
comes after all of its dependencies, with its init callback queued on
`initScripts` (run on window load by the bootstrap script).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable

from aaoffline.constants import (
    BITBUCKET_URL,
    DEFAULT_DATA_URL,
    MODULE_REGEX,
    SENTINEL_MODULES,
    UPDATE_MESSAGE,
)
from aaoffline.extract import PatternNotMatched, UpstreamChangedError
from aaoffline.http import HttpClient
from aaoffline.progress import NullProgress, ProgressReporter
from aaoffline.transform import TextEdit, apply_edits

logger = logging.getLogger(__name__)

# (module name, raw text) -> text to parse. Used to splice local data in.
ModuleTransformer = Callable[[str, str], str]


def module_url(name: str, player_version: str) -> str:
    if name == "default_data":
        # Rendered by the site; the repository only has the PHP source.
        return DEFAULT_DATA_URL
    if name == "trial":
        # Its PHP blocks are filled in locally later.
        return f"{BITBUCKET_URL}/{player_version}/trial.js.php"
    return f"{BITBUCKET_URL}/{player_version}/Javascript/{name}.js"


class JsModule:
    def __init__(self, name: str, dependencies: set[str], init: str, content: str) -> None:
        self.name = name
        self.dependencies = dependencies
        self.init = init
        self.content = content

    def __repr__(self) -> str:
        return f"JsModule({self.name!r}, deps={sorted(self.dependencies)})"


def parse_module(name: str, text: str) -> JsModule:
    """Parse the declaration of module `name` out of `text`."""
    match = MODULE_REGEX.search(text)
    if match is None:
        raise PatternNotMatched(f"Script module {name} seemingly changed format. {UPDATE_MESSAGE}")
    declared = match.group(1)
    if declared != name:
        raise UpstreamChangedError(
            f"Script module {name} declares itself as {declared!r}. {UPDATE_MESSAGE}"
        )
    try:
        deps = json.loads(match.group(2).replace("'", '"'))
    except json.JSONDecodeError as e:
        raise UpstreamChangedError(
            f"Could not parse dependency array of module {name}. {UPDATE_MESSAGE}"
        ) from e
    if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
        raise UpstreamChangedError(
            f"Dependency array of module {name} is not a list of names. {UPDATE_MESSAGE}"
        )
    return JsModule(name, set(deps), match.group(3), text)


def _emit(module: JsModule) -> str:
    match = MODULE_REGEX.search(module.content)
    if match is None:
        raise PatternNotMatched(f"Script module {module.name} lost its declaration.")
    body = apply_edits(module.content, [TextEdit.of_match(match, "\n")])
    body = body.replace(f"Modules.complete('{module.name}')", "\n")
    # Avoids a clash with a global of the same name.
    body = body.replace("SoundHowler.", "window.SoundHowler.")
    return (
        f"// {module.name}.js\n\n"
        f"initScripts.push(() => {{{module.init}}});\n"
        f"{body}"
    )


def combine_modules(modules: Iterable[JsModule]) -> str:
    """Concatenate `modules` in dependency order.

    Each scan emits, in name order, every module whose dependencies are
    all satisfied. A scan that emits nothing means a cycle or a missing
    module and raises DependencyCycleError.
    """
    pending = {module.name: module for module in modules}
    satisfied = set(SENTINEL_MODULES)
    parts: list[str] = []
    while pending:
        ready = [
            name for name in sorted(pending)
            if pending[name].dependencies <= satisfied
        ]
        if not ready:
            unresolved = {name: sorted(m.dependencies - satisfied) for name, m in pending.items()}
            raise DependencyCycleError(
                f"Script modules have cyclic or missing dependencies: {unresolved}"
            )
        for name in ready:
            logger.debug("%s is satisfied", name)
            parts.append(_emit(pending.pop(name)))
            satisfied.add(name)
    return "".join(parts)


class ModuleResolver:
    """Fetches a module and everything it transitively depends on.

    Args:
        client:         Network client.
        player_version: Branch or tag of the player repository.
        concurrency:    Maximum fetches in flight per discovery round.
        transform:      Optional hook applied to each module's raw text.
        progress:       Receives one tick per fetched module.
    """

    def __init__(
        self,
        client: HttpClient,
        player_version: str = "master",
        concurrency: int = 5,
        transform: ModuleTransformer | None = None,
        progress: ProgressReporter | None = None,
    ) -> None:
        self._client = client
        self._version = player_version
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._transform = transform
        self._progress = progress or NullProgress()

    async def fetch_text(self, name: str) -> str:
        async with self._semaphore:
            return await self._client.get_text(module_url(name, self._version))

    async def fetch_module(self, name: str) -> JsModule:
        logger.debug("Retrieving JS module %s", name)
        text = await self.fetch_text(name)
        self._progress.inc(1)
        if self._transform is not None:
            text = self._transform(name, text)
        return parse_module(name, text)

    async def discover(self, entry: str = "player") -> dict[str, JsModule]:
        modules: dict[str, JsModule] = {}
        frontier = {entry}
        while frontier:
            targets = sorted(frontier - SENTINEL_MODULES - set(modules))
            self._progress.inc_length(len(targets))
            fetched = await asyncio.gather(*(self.fetch_module(name) for name in targets))
            for module in fetched:
                modules[module.name] = module
            frontier = set().union(*(m.dependencies for m in fetched)) - set(modules)
            logger.debug("next targets: %s", sorted(frontier))
        return modules

    async def resolve(self, entry: str = "player") -> str:
        """Return the combined script for `entry` and its dependencies."""
        modules = await self.discover(entry)
        return combine_modules(modules.values())


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DependencyCycleError(UpstreamChangedError):
    """Raised when modules cannot be ordered by their dependencies."""
