"""Exceptions raised by hyper-dns."""


class HyperDNSError(Exception):
    """Base class for hyper-dns errors."""
    code = 'E_HYPER_DNS'


class RecordNotFoundError(HyperDNSError, LookupError):
    """No key could be found for a name through any configured channel."""
    code = 'ENOTFOUND'

    def __init__(self, name: str, msg: str = 'No record found for '):
        super().__init__(f"{msg}{name}")
        self.name = name


class NotFQDNError(HyperDNSError, ValueError):
    """The name to resolve is not a fully qualified domain name."""
    code = 'E_DOMAIN_NOT_FQDN'

    def __init__(self, domain: str, msg: str = None):
        super().__init__(msg or f"Domain ({domain}) is not a FQDN.")
        self.domain = domain
