"""Shared fixtures: an offline fake of the site and sample case data.

No test touches the network. Every request goes through FakeSite, an
httpx.MockTransport handler that serves registered URLs and records what
was asked for.
"""

import copy
import json
from collections.abc import Callable

import httpx
import pytest

from aaoffline.constants import AAONLINE_BASE, BITBUCKET_URL, BRIDGE_URL, DEFAULT_DATA_URL
from aaoffline.http import HttpClient
from aaoffline.models import Case, CaseInformation, SitePaths
from aaoffline.site import DefaultData

GIF = b"GIF89a\x01\x00\x01\x00\x00\x00\x00;"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8

SITE_CONFIG = {
    "bg_subdir": "bg",
    "defaultplaces_subdir": "defaultplaces",
    "evidence_subdir": "evidence",
    "icon_subdir": "persos",
    "lang_dir": "Languages",
    "locks_subdir": "psyche_locks",
    "music_dir": "music",
    "picture_dir": "images",
    "popups_subdir": "popups",
    "sounds_dir": "sounds",
    "startup_subdir": "startup",
    "still_subdir": "still",
    "talking_subdir": "talking",
    "voices_dir": "voices",
}

DEFAULT_PLACES = {
    "-1": {
        "id": -1,
        "name": "Courtroom",
        "background": {"image": "pw_courtroom", "external": 0},
        "background_objects": [],
        "foreground_objects": [],
    },
    "-2": {
        "id": -2,
        "name": "Black screen",
        "background": {"colour": "#000000"},
        "background_objects": [],
        "foreground_objects": [],
    },
}


# ---------------------------------------------------------------------------
# Source text builders
# ---------------------------------------------------------------------------

def escape_js(value) -> str:
    """JSON-encode `value` as the body of a double-quoted JS string."""
    return json.dumps(value).replace("\\", "\\\\").replace('"', '\\"')


def js_module(name: str, deps: list[str], body: str = "", init: str = "") -> str:
    deps_js = "[" + ", ".join(f"'{d}'" for d in deps) + "]"
    return (
        f"{body}\n"
        "Modules.load(new Object({\n"
        f"\tname : '{name}',\n"
        f"\tdependencies : {deps_js},\n"
        f"\tinit : function() {{{init}}}\n"
        "}));\n"
        f"Modules.complete('{name}');\n"
    )


def case_script(info: dict, data: dict) -> str:
    return (
        f'var trial_information = JSON.parse("{escape_js(info)}");\n'
        f'var initial_trial_data = JSON.parse("{escape_js(data)}");\n'
    )


def default_module(startup: dict | None = None, places: dict | None = None) -> str:
    startup = {"Phoenix/1": 1} if startup is None else startup
    places = DEFAULT_PLACES if places is None else places
    body = (
        f'var default_profiles_startup = JSON.parse("{escape_js(startup)}");\n'
        f"var default_places = {json.dumps(places)};\n"
    )
    return js_module("default_data", [], body)


PLAYER_MODULE_BODY = """
var lang = new Object();
Languages.requestFiles(['common', 'player'], function(){
    startPlayer();
});
includeStyle('extra');
includeScript('howler.js/howler.min', false, '', function(){ initSound(); });
function playSound(url) { return new Howl({ src: [url], preload: true }); }
function getVoiceUrl(voice_id, ext) { return cfg.voices_dir + voice_id + '.' + ext; }
function getDefaultSpriteUrl(base, sprite_id, status) { return cfg.picture_dir + base; }
function lockImage(img, lock_id) { img.src = cfg.picture_dir + cfg.locks_subdir + 'fg_chains_appear.gif?id=' + lock_id; }
function jfaImage(img, lock_id) { img.src = cfg.picture_dir + cfg.locks_subdir + 'jfa_lock_appears.gif?id=' + lock_id; }
function preload() { preloadPlaceImages(default_places[i], img_container); }
function endCase(next_id, save) { window.location.href = 'player.php?trial_id=' + next_id + '&save_data=' + save; }
"""

TRIAL_MODULE_BODY = """<?php include('common_render.php'); ?>
<?php
echo 'var trial_information;';
?>"""

PLAYER_SHELL = """<!DOCTYPE html>
<?php include('common_render.php'); ?>
<html lang="<?php echo language_backend('en') ?>">
<head>
<title><?php echo 'Ace Attorney Online - Trial Player (Loading)'; ?></title>
<link rel="stylesheet" type="text/css" href="CSS/player.css" />
<script>ga('create', 'UA-1234-1');</script>
<script type="text/javascript"><?php include('bridge.js.php'); ?></script>
</head>
<body>
<h1><?php echo 'Loading trial ...'; ?></h1>
<img src="images/logo.png" />
</body>
</html>
"""


def sample_case_data() -> dict:
    """A small case that touches every asset category."""
    return {
        "profiles": [0, {
            "id": 1,
            "base": "Phoenix",
            "icon": "",
            "custom_sprites": [{"talking": "https://example.com/talk.gif", "still": "", "startup": ""}],
        }],
        "evidence": [0, {
            "icon": "badge",
            "icon_external": 0,
            "check_button_data": [
                {"type": "text", "content": "Just text"},
                {"type": "image", "content": "https://example.com/check.png"},
            ],
        }],
        "places": [0, {
            "background": {"image": "https://example.com/room.jpg", "external": 1},
            "background_objects": [],
            "foreground_objects": [{"image": "https://example.com/fg.png", "external": 1}],
        }],
        "popups": [0, {"path": "objection", "external": 0}],
        "music": [0, {"path": "https://example.com/theme.mp3", "external": True}],
        "sounds": [0, {"path": "https://example.com/sfx.mp3", "external": True}],
        "frames": [0, {"place": -1, "characters": [{"profile_id": 1, "sprite_id": -1}]}],
        "scenes": [0, {"dialogues": [{"locks": {"locks_to_display": [1, 2]}}]}],
    }


def sample_info(case_id: int = 1, title: str = "Turnabout Test", sequence: dict | None = None) -> dict:
    info = {
        "id": case_id,
        "title": title,
        "author": "Tester",
        "author_id": 7,
        "can_read": True,
        "can_write": False,
        "format": "Def6",
        "language": "en",
        "last_edit_date": 1700000000,
    }
    if sequence is not None:
        info["sequence"] = sequence
    return info


# ---------------------------------------------------------------------------
# FakeSite
# ---------------------------------------------------------------------------

class FakeSite:
    """Serves registered URLs; anything else is 404 unless `fallback` is set."""

    def __init__(self) -> None:
        self.routes: dict[str, httpx.Response] = {}
        self.requests: list[httpx.Request] = []
        self.fallback: bytes | None = None

    def add(self, url: str, body: str | bytes, status: int = 200, headers: dict | None = None) -> None:
        content = body.encode("utf-8") if isinstance(body, str) else body
        self.routes[url] = httpx.Response(status, content=content, headers=headers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.routes:
            template = self.routes[url]
            return httpx.Response(template.status_code, content=template.content, headers=template.headers)
        if self.fallback is not None:
            return httpx.Response(200, content=self.fallback)
        return httpx.Response(404, content=b"not found")

    def count(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    def client(self, **kwargs) -> HttpClient:
        kwargs.setdefault("backoff", 0)
        return HttpClient(transport=httpx.MockTransport(self.handler), **kwargs)

    # -- whole-site setup ------------------------------------------------

    def add_case(self, case_id: int, info: dict | None = None, data: dict | None = None) -> None:
        info = sample_info(case_id) if info is None else info
        data = sample_case_data() if data is None else data
        self.add(f"{AAONLINE_BASE}/trial.js.php?trial_id={case_id}", case_script(info, data))

    def add_player(self, version: str = "master") -> None:
        raw = f"{BITBUCKET_URL}/{version}"
        self.add(BRIDGE_URL, f"var cfg = {json.dumps(SITE_CONFIG)};\n")
        self.add(DEFAULT_DATA_URL, default_module())
        self.add(f"{raw}/player.php", PLAYER_SHELL)
        self.add(f"{raw}/Javascript/common.js", "function common() {}")
        self.add(f"{raw}/trial.js.php", js_module("trial", [], TRIAL_MODULE_BODY))
        self.add(
            f"{raw}/Javascript/player.js",
            js_module("player", ["trial", "default_data", "page_loaded"], PLAYER_MODULE_BODY, "start();"),
        )
        self.add(f"{raw}/Javascript/howler.js/howler.min.js", "/* howler */")
        self.add(f"{AAONLINE_BASE}/CSS/player.css", 'body { background: url("images/bg.png"); }')
        self.add(f"{AAONLINE_BASE}/CSS/extra.css", ".extra { color: red; }")
        self.add(f"{AAONLINE_BASE}/CSS/images/bg.png", PNG)
        self.add(f"{AAONLINE_BASE}/images/logo.png", PNG)
        self.add(f"{AAONLINE_BASE}/Languages/en/common.js", '{"yes": "Yes", "menu": {"open": "Open"}}')
        self.add(f"{AAONLINE_BASE}/Languages/en/player.js", '{"menu": {"close": "Close", "open": null}}')


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
async def client(site: FakeSite):
    http = site.client()
    yield http
    await http.aclose()


@pytest.fixture
def site_paths() -> SitePaths:
    return SitePaths.model_validate(SITE_CONFIG)


@pytest.fixture
def default_data() -> DefaultData:
    return DefaultData.from_default_module(default_module())


@pytest.fixture
def make_case() -> Callable[..., Case]:
    def make(case_id: int = 1, title: str = "Turnabout Test", data: dict | None = None,
             sequence: dict | None = None) -> Case:
        info = CaseInformation.model_validate(sample_info(case_id, title, sequence))
        return Case(information=info, data=copy.deepcopy(sample_case_data() if data is None else data))
    return make
