"""
nginx configuration generation for serving the key set.

Every path is answered with the mounted ``jwks.json``, so the key set is
available both at ``/`` and at ``/jwks.json`` regardless of the endpoint
configured on the resource.
"""

from jwks_operator.constants import (
    DEFAULT_CACHE_MAX_AGE,
    DEFAULT_NGINX_PORT,
    NGINX_HTML_ROOT,
)
from jwks_operator.errors import InvalidConfigurationError
from jwks_operator.models import normalize_endpoint

_SERVER_BLOCK = """server {{
    listen {port};
    server_name _;

    root {root};

    # Security headers
    add_header X-Content-Type-Options "nosniff" always;
    add_header X-Frame-Options "DENY" always;
    add_header X-XSS-Protection "1; mode=block" always;

{locations}
}}"""

_ALL_PATHS_LOCATION = """    location / {{
        default_type application/json;
        try_files /jwks.json =404;

        # CORS headers
        add_header Access-Control-Allow-Origin "*" always;
        add_header Access-Control-Allow-Methods "GET, OPTIONS" always;
        add_header Access-Control-Allow-Headers "Content-Type" always;

        # Cache control
        add_header Cache-Control "public, max-age={cache_max_age}" always;
    }}"""


class NginxConfigGenerator:
    """Renders the ``default.conf`` served from the nginx ConfigMap."""

    def __init__(self, cache_max_age: int = DEFAULT_CACHE_MAX_AGE):
        self.cache_max_age = cache_max_age

    def location_block(self) -> str:
        return _ALL_PATHS_LOCATION.format(cache_max_age=self.cache_max_age)

    def server_block(self, port: int = DEFAULT_NGINX_PORT) -> str:
        return _SERVER_BLOCK.format(
            port=port, root=NGINX_HTML_ROOT, locations=self.location_block()
        )

    def generate(self, jwks_config_map_name: str, endpoint: str | None = None) -> str:
        """
        Generate the configuration for one JWKS resource.

        Raises:
            InvalidConfigurationError: If the key set ConfigMap name is empty
        """
        if not jwks_config_map_name:
            raise InvalidConfigurationError("JWKS ConfigMap name cannot be empty")
        # The endpoint only has to be well formed; every path serves the key set.
        normalize_endpoint(endpoint)
        return self.server_block()
