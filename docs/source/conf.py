from __future__ import annotations
import sys
from pathlib import Path
from importlib.metadata import version as pkg_version, PackageNotFoundError

# src layout: import the package from the checkout
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "src"))

project = "IMDLink"
author = "IMDLink developers"
try:
    release = pkg_version("imdlink")
    version = ".".join(release.split(".")[:2])
except PackageNotFoundError:
    release = version = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
    "sphinx.ext.viewcode",
    "myst_parser",
]

autosummary_generate = True

autodoc_default_options = {
    "members": True,
    "undoc-members": False,
    "show-inheritance": True,
}
autodoc_typehints = "description"
autodoc_class_signature = "separated"
autodoc_preserve_defaults = True

# MPI is optional at runtime
autodoc_mock_imports = ["mpi4py"]

napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_use_param = True
napoleon_use_rtype = True

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "numpy": ("https://numpy.org/doc/stable", None),
}

html_theme = "furo"

templates_path = ["_templates"]
exclude_patterns = ["_build"]
html_static_path = ["_static"]
