"""Remote provider REST access and proxy checks."""

from .provisioner import RepositoryProvisioner
from .proxy import ProxyProbe

__all__ = ["RepositoryProvisioner", "ProxyProbe"]
