"""Sphinx configuration for fastapi-fulfillment."""

project = "fastapi-fulfillment"
release = "0.1.0"

extensions = [
    "myst_parser",
    "autodoc2",
    "sphinx.ext.intersphinx",
]

autodoc2_packages = [
    {
        "path": "../src/fastapi_fulfillment",
        "module": "fastapi_fulfillment",
        "exclude_dirs": ["templates"],
    },
]

myst_enable_extensions = [
    "colon_fence",
    "fieldlist",
]

templates_path = ["_templates"]
exclude_patterns = ["_build"]

html_theme = "furo"

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "fastapi": ("https://fastapi.tiangolo.com", None),
    "httpx": ("https://www.python-httpx.org", None),
    "sqlalchemy": ("https://docs.sqlalchemy.org/en/20", None),
}

source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}
