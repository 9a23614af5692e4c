"""Handlebars templates for the JavaScript we generate."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class TemplateError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def js_string(value: Any) -> str:
    """Escape `value` for use inside a single-quoted JS string literal."""
    return (
        str(value)
        .replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def render_template(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise TemplateError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────
# Values are inserted with triple braces; they are JS, not HTML.

BOOTSTRAP_SCRIPT = """var cfg = {{{config}}};
function getFileVersion(path_components)
{
    // We are not using file versions here.
    return '';
}
{{{common}}}

let initScripts = [];
{{{modules}}}
window.addEventListener('load', function() {
    // Execute all init functions in order.
    initScripts.forEach((x) => x());
}, false);
"""

VOICE_LOOKUP = """{{#each voices}}if (-voice_id === {{{id}}} && ext === '{{{ext}}}') return '{{{url}}}';
{{/each}}return 'data:audio/wav;base64,'"""

SPRITE_LOOKUP = """{{#each sprites}}if (base === '{{{base}}}' && sprite_id === {{{id}}} && status === '{{{kind}}}') return '{{{url}}}';
{{/each}}return 'data:image/gif;base64,'"""

REDIRECT_SWITCH = """switch (Number.parseInt({{{target}}})) {
{{#each cases}}case {{{id}}}: window.location.href = '{{{path}}}'{{{suffix}}};
break;
{{/each}}default: window.alert('Target case was not downloaded when this case was written. Please download a sequence of cases together (at once). You can, for example, use `-s every` with aaoffline to do this.');
}"""

USERSCRIPT_TAG = """<script type="text/javascript">{{{scripts}}}</script>
</html>"""
