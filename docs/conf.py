"""Sphinx configuration for the u3v-terminal project."""

from __future__ import annotations

import datetime
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

project = "u3v-terminal"
author = "u3v-terminal Contributors"
current_year = datetime.datetime.now().year
copyright = f"{current_year}, {author}"

try:
    from u3v_terminal import __version__ as release
except Exception:  # pragma: no cover - fallback when package unavailable
    release = "0.0.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
    "sphinx.ext.viewcode",
]

autosummary_generate = True
autosummary_imported_members = False
autodoc_typehints = "description"
autodoc_type_aliases = {
    "DeviceChooser": "u3v_terminal.core.DeviceChooser",
}
autodoc_member_order = "bysource"
autodoc_default_options = {
    "show-inheritance": True,
    "members": True,
    "undoc-members": False,
}

napoleon_google_docstring = True
napoleon_numpy_docstring = False

autodoc_mock_imports = [
    "usb",
    "usb1",
]

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
}

# Mocked USB types.
nitpick_ignore = [
    ("py:class", "usb.core.Device"),
    ("py:class", "usb1.USBDevice"),
]

rst_epilog = """
.. |terminal_base| replace:: ``0x30000``
.. |password_env| replace:: ``TY_TERM_PASS``
"""

templates_path = ["_templates"]
exclude_patterns = ["_build"]

html_theme = "sphinx_rtd_theme"
html_static_path = []
