"""depfetch - registry index aggregation and package installation.

The package builds a unified view of the package specifications offered by
configured registries and local caches, and installs selected packages into
a target directory tree.
"""

from depfetch.constants import VERSION as __version__

from depfetch.index import Index
from depfetch.models import Specification
from depfetch.remote import Remote
from depfetch.source import RegistrySource

__all__ = [
    "Index",
    "Specification",
    "Remote",
    "RegistrySource",
    "__version__",
]
