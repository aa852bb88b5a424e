import os
import re
import base64
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import boto3
from google.auth import default
from google.auth.transport.requests import Request

DEFAULT_REGISTRY = 'index.docker.io'
DOCKER_HUB_ALIASES = ('docker.io', 'index.docker.io', 'registry-1.docker.io', 'registry.hub.docker.com')
GCR_HOSTS = ('gcr.io', 'us.gcr.io', 'eu.gcr.io', 'asia.gcr.io')

_ECR_HOST_RE = re.compile(r'^(\d+)\.dkr\.ecr\.([a-z0-9-]+)\.amazonaws\.com(\.cn)?$')


def parse_reference(image_name: str) -> Tuple[str, str, str]:
    """Split an image reference into (registry, repository path, tag or digest).

    ``nginx`` -> ('index.docker.io', 'library/nginx', 'latest')
    """
    name = image_name
    reference = 'latest'
    if '@' in name:
        name, reference = name.split('@', 1)
    else:
        last = name.rsplit('/', 1)[-1]
        if ':' in last:
            name, reference = name.rsplit(':', 1)

    parts = name.split('/', 1)
    if len(parts) == 2 and ('.' in parts[0] or ':' in parts[0] or parts[0] == 'localhost'):
        registry, path = parts
    else:
        registry, path = DEFAULT_REGISTRY, name
    if registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if '/' not in path:
            path = f"library/{path}"
    return registry, path, reference


def is_rate_limited_registry(registry: str) -> bool:
    """Registries whose HEAD failures are worth a warning under the ``auto`` strategy."""
    return registry in (DEFAULT_REGISTRY, 'ghcr.io')


def _to_aware_utc(dt):
    if dt is None:
        return None
    if getattr(dt, 'tzinfo', None) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ecr_auth_config(
    registry: str,
    logger,
    ecr_auth_cache: dict,
    retry_func=None,
    aws_access_key_id: Optional[str] = None,
    aws_secret_access_key: Optional[str] = None,
) -> Optional[Dict[str, str]]:
    """Return pull credentials for an ECR registry host, cached until shortly before expiry."""
    match = _ECR_HOST_RE.match(registry)
    if not match:
        return None
    region = match.group(2)
    now = datetime.now(timezone.utc)

    cache = ecr_auth_cache.get(region)
    if cache and cache.get('expires') and now < _to_aware_utc(cache['expires']) - timedelta(minutes=5):
        return {
            'username': cache['username'],
            'password': cache['password'],
            'serveraddress': cache['endpoint'],
        }

    try:
        if aws_access_key_id and aws_secret_access_key:
            ecr_client = boto3.client(
                'ecr',
                region_name=region,
                aws_access_key_id=aws_access_key_id,
                aws_secret_access_key=aws_secret_access_key,
            )
        else:
            ecr_client = boto3.client('ecr', region_name=region)
        if retry_func:
            response = retry_func(ecr_client.get_authorization_token)
        else:
            response = ecr_client.get_authorization_token()
        auth = response['authorizationData'][0]
        username, password = base64.b64decode(auth['authorizationToken']).decode().split(':', 1)
        endpoint = auth['proxyEndpoint']
        expires = _to_aware_utc(auth.get('expiresAt')) or (now + timedelta(hours=12))
    except Exception as e:
        logger.error(f"ECR authentication error for {registry}: {e}")
        return None

    ecr_auth_cache[region] = {
        'username': username,
        'password': password,
        'endpoint': endpoint,
        'expires': expires,
    }
    logger.info(f"ECR token refreshed for region {region}")
    return {'username': username, 'password': password, 'serveraddress': endpoint}


def gcr_auth_config(registry: str, logger, service_account_path: Optional[str] = None) -> Optional[Dict[str, str]]:
    if registry not in GCR_HOSTS and not registry.endswith('-docker.pkg.dev'):
        return None
    try:
        if service_account_path:
            os.environ['GOOGLE_APPLICATION_CREDENTIALS'] = service_account_path
        credentials, _ = default(scopes=['https://www.googleapis.com/auth/cloud-platform'])
        credentials.refresh(Request())
        return {'username': 'oauth2accesstoken', 'password': credentials.token, 'serveraddress': registry}
    except Exception as e:
        logger.error(f"Google registry authentication error for {registry}: {e}")
        return None


class CredentialProvider:
    """Resolves pull credentials for an image reference.

    Static REPO_USER/REPO_PASS credentials apply to every registry; ECR and
    Google registries get short-lived tokens from their cloud SDKs instead.
    """

    def __init__(self, logger, username: Optional[str] = None, password: Optional[str] = None,
                 gcr_service_account: Optional[str] = None, retry_func=None):
        self.logger = logger
        self.username = username if username is not None else os.getenv('REPO_USER')
        self.password = password if password is not None else os.getenv('REPO_PASS')
        self.gcr_service_account = gcr_service_account or os.getenv('GCR_SERVICE_ACCOUNT')
        self.retry_func = retry_func
        self._ecr_auth_cache: Dict[str, Dict] = {}

    def auth_config(self, image_name: str) -> Optional[Dict[str, str]]:
        registry, _, _ = parse_reference(image_name)
        if _ECR_HOST_RE.match(registry):
            return ecr_auth_config(
                registry,
                self.logger,
                self._ecr_auth_cache,
                self.retry_func,
                os.getenv('AWS_ACCESS_KEY_ID'),
                os.getenv('AWS_SECRET_ACCESS_KEY'),
            )
        if registry in GCR_HOSTS or registry.endswith('-docker.pkg.dev'):
            return gcr_auth_config(registry, self.logger, self.gcr_service_account)
        if self.username and self.password:
            return {'username': self.username, 'password': self.password, 'serveraddress': registry}
        return None
