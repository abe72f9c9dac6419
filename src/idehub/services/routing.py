"""Traefik routing labels for instance services.

Every instance exposes three endpoints, each on its own subdomain:

    <id>-vnc.<domain>   -> port 6080 (remote desktop)
    <id>-code.<domain>  -> port 8080 (code editor)
    <id>-web.<domain>   -> port 3000 (in-instance web server)

Local development domains (``localhost``, ``*.localhost``) and bare IP
addresses are served over plain HTTP on the ``web`` entrypoint. Every other
domain gets the ``websecure`` entrypoint, a certificate resolver and the
shared security-headers middleware.
"""

import ipaddress

from idehub.config import RoutingConfig
from idehub.core.errors import InvalidInstanceIdError
from idehub.core.models import InstanceUrls
from idehub.services.identity import is_valid_id

DOMAIN_LABEL = "idehub.domain"
INSTANCE_ID_LABEL = "idehub.instance.id"

# endpoint name -> container port
ENDPOINTS = {
    "vnc": 6080,
    "code": 8080,
    "web": 3000,
}


def is_local_domain(domain: str) -> bool:
    """Check whether a domain is served without TLS."""
    host = domain.strip().lower()
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class RoutingConfigurator:
    """Builds reverse-proxy labels and public URLs for instances."""

    def __init__(self, config: RoutingConfig) -> None:
        self._config = config

    @property
    def default_domain(self) -> str:
        return self._config.domain

    def labels_for(self, instance_id: str, domain: str | None = None) -> dict[str, str]:
        """Build the service label set for an instance.

        Raises:
            InvalidInstanceIdError: id is not a valid DNS label.
        """
        if not is_valid_id(instance_id):
            raise InvalidInstanceIdError(instance_id)

        domain = domain or self._config.domain
        local = is_local_domain(domain)
        entrypoint = (
            self._config.plain_entrypoint if local else self._config.secure_entrypoint
        )

        labels = {
            "traefik.enable": "true",
            DOMAIN_LABEL: domain,
            INSTANCE_ID_LABEL: instance_id,
        }
        for endpoint, port in ENDPOINTS.items():
            name = f"{endpoint}-{instance_id}"
            router = f"traefik.http.routers.{name}"
            labels[f"{router}.rule"] = f"Host(`{instance_id}-{endpoint}.{domain}`)"
            labels[f"{router}.entrypoints"] = entrypoint
            labels[f"{router}.service"] = name
            labels[f"traefik.http.services.{name}.loadbalancer.server.port"] = str(port)
            if not local:
                labels[f"{router}.tls.certresolver"] = self._config.cert_resolver
                labels[f"{router}.middlewares"] = self._config.security_middleware
        return labels

    def urls_for(self, instance_id: str, domain: str | None = None) -> InstanceUrls:
        """Public URLs for an instance's endpoints."""
        domain = domain or self._config.domain
        proto = "http" if is_local_domain(domain) else "https"
        return InstanceUrls(
            vnc=f"{proto}://{instance_id}-vnc.{domain}",
            code_server=f"{proto}://{instance_id}-code.{domain}",
            web_server=f"{proto}://{instance_id}-web.{domain}",
        )

    def extract_domain(self, labels: dict[str, str]) -> str:
        """Domain recorded on a service, or the configured default."""
        return labels.get(DOMAIN_LABEL) or self._config.domain

    @staticmethod
    def extract_id(labels: dict[str, str]) -> str:
        """Instance id recorded on a service, or an empty string."""
        return labels.get(INSTANCE_ID_LABEL, "")

    is_local_domain = staticmethod(is_local_domain)
    is_valid_id = staticmethod(is_valid_id)
