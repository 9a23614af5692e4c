"""Download Ace Attorney Online cases for offline play.

A run fetches the cases, their assets and the player, patches the player
so it needs no network, and writes one playable HTML file per case:

  {output}/
    index.html           Player with scripts, CSS and case data inlined
    assets/              Downloaded images, music and sounds
                         (absent with output_mode="single_file", where
                         every asset is inlined as a data URI)

Several cases go into one subdirectory (or one .html file) each.
"""

# Re-export the public entry points so `import aaoffline` is enough.

from .config import Settings, build_client, load_settings  # noqa: F401
from .pipeline import Bundler, CancelledByUser, OutputExistsError  # noqa: F401

__version__ = "0.4.0"
