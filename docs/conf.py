# Sphinx configuration file for the workflow engine API reference

import os
import sys
sys.path.insert(0, os.path.abspath('../src'))

project = 'Workflow Orchestrator'
copyright = '2024, Workflow Orchestrator contributors'
author = 'Workflow Orchestrator contributors'
from workflow_orchestrator import __version__ as release  # noqa: E402

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.intersphinx',
    'sphinx_autodoc_typehints',
]

templates_path = ['_templates']
exclude_patterns = ['_build', 'Thumbs.db', '.DS_Store']

html_theme = 'sphinx_rtd_theme'
html_static_path = ['_static']

# Autodoc settings
autodoc_default_options = {
    'members': True,
    'member-order': 'bysource',
    'special-members': '__init__',
    'exclude-members': '__weakref__,model_config,model_fields',
    'undoc-members': False,
}

# Napoleon settings
napoleon_google_docstring = True
napoleon_numpy_docstring = False

# Intersphinx mapping
intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pydantic': ('https://docs.pydantic.dev/latest', None),
}

# Pydantic models render their fields through autodoc-typehints
typehints_fully_qualified = False
always_document_param_types = True
