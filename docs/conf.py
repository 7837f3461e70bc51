# Configuration file for the Sphinx documentation builder.
#
# This file only contains a selection of the most common options. For a full
# list see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Path setup --------------------------------------------------------------

import os
import sys

sys.path.insert(0, os.path.abspath(".."))

from acmeportal.version import __version__  # noqa: E402

# -- Variables ---------------------------------------------------------------

rst_prolog = """
.. |SAMPLE_CONFIG| replace:: conf/portal.sample.yml
"""

# -- Project information -----------------------------------------------------

project = "ACME Portal"
copyright = "2026, the acmeportal authors"
author = "the acmeportal authors"
release = __version__


# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.intersphinx",
    "sphinx-prompt",
    "sphinx_substitution_extensions",
]

intersphinx_mapping = {
    "aiohttp": ("https://docs.aiohttp.org/en/latest/", None),
    "acme": ("https://acme-python.readthedocs.io/en/latest/", None),
    "cryptography": ("https://cryptography.io/en/latest/", None),
    "dns": ("https://dnspython.readthedocs.io/en/latest/", None),
    "josepy": ("https://python-jose.readthedocs.io/en/latest/", None),
    "pydantic": ("https://docs.pydantic.dev/latest/", None),
    "python": ("https://docs.python.org/3", None),
}

autodoc_default_options = {"members": True}

templates_path = ["_templates"]

exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]


# -- Options for HTML output -------------------------------------------------

import sphinx_glpi_theme  # noqa: E402

html_theme = "glpi"
html_theme_path = sphinx_glpi_theme.get_html_themes_path()

html_static_path = []
