import re
import base64
from typing import Dict, Optional

import requests

from watch_core.errors import RegistryAuthError, TransientError
from watch_core.registry_utils import parse_reference

MANIFEST_ACCEPT = ', '.join([
    'application/vnd.oci.image.index.v1+json',
    'application/vnd.docker.distribution.manifest.list.v2+json',
    'application/vnd.docker.distribution.manifest.v2+json',
    'application/vnd.oci.image.manifest.v1+json',
])

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def parse_challenge(header: str):
    """Split a WWW-Authenticate header into (scheme, params)."""
    header = (header or '').strip()
    if not header:
        return '', {}
    scheme, _, rest = header.partition(' ')
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


def _basic(auth_config: Optional[Dict[str, str]]):
    if auth_config and auth_config.get('username') and auth_config.get('password'):
        return (auth_config['username'], auth_config['password'])
    return None


def get_auth_header(registry: str, path: str, auth_config: Optional[Dict[str, str]], timeout: float) -> Dict[str, str]:
    """Answer the registry's auth challenge and return the headers for manifest requests."""
    try:
        resp = requests.get(f"https://{registry}/v2/", timeout=timeout)
    except requests.RequestException as e:
        raise TransientError(f"challenge request to {registry} failed: {e}") from e
    if resp.status_code != 401:
        return {}

    scheme, params = parse_challenge(resp.headers.get('WWW-Authenticate', ''))
    creds = _basic(auth_config)
    if scheme == 'basic':
        if not creds:
            raise RegistryAuthError(f"{registry} requires basic credentials")
        token = base64.b64encode(f"{creds[0]}:{creds[1]}".encode()).decode()
        return {'Authorization': f"Basic {token}"}
    if scheme != 'bearer' or not params.get('realm'):
        raise RegistryAuthError(f"unsupported auth challenge from {registry}: {scheme or 'none'}")

    query = {'scope': f"repository:{path}:pull"}
    if params.get('service'):
        query['service'] = params['service']
    try:
        token_resp = requests.get(params['realm'], params=query, auth=creds, timeout=timeout)
    except requests.RequestException as e:
        raise TransientError(f"token request to {params['realm']} failed: {e}") from e
    if token_resp.status_code in (401, 403):
        raise RegistryAuthError(f"token request for {path} rejected ({token_resp.status_code})")
    if token_resp.status_code >= 400:
        raise TransientError(f"token request for {path} returned {token_resp.status_code}")
    body = token_resp.json()
    token = body.get('token') or body.get('access_token')
    if not token:
        raise RegistryAuthError(f"no token in response from {params['realm']}")
    return {'Authorization': f"Bearer {token}"}


def fetch_remote_digest(image_name: str, auth_config: Optional[Dict[str, str]] = None, timeout: float = 30) -> str:
    """HEAD the manifest of ``image_name`` and return its Docker-Content-Digest."""
    registry, path, reference = parse_reference(image_name)
    headers = {'Accept': MANIFEST_ACCEPT}
    headers.update(get_auth_header(registry, path, auth_config, timeout))
    url = f"https://{registry}/v2/{path}/manifests/{reference}"
    try:
        resp = requests.head(url, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        raise TransientError(f"HEAD {url} failed: {e}") from e
    if resp.status_code in (401, 403):
        raise RegistryAuthError(f"HEAD {url} unauthorized ({resp.status_code})")
    if resp.status_code >= 400:
        raise TransientError(f"HEAD {url} returned {resp.status_code}")
    digest = resp.headers.get('Docker-Content-Digest')
    if not digest:
        raise TransientError(f"HEAD {url} returned no Docker-Content-Digest header")
    return digest


def _strip_algorithm(digest: str) -> str:
    return digest.split(':', 1)[1] if digest.startswith('sha256:') else digest


def digest_matches(image_info: Optional[Dict], remote_digest: str) -> bool:
    """True when any RepoDigests entry of the local image equals the remote digest."""
    if not image_info:
        return False
    remote = _strip_algorithm(remote_digest)
    for repo_digest in image_info.get('RepoDigests') or []:
        local = repo_digest.split('@', 1)[1] if '@' in repo_digest else repo_digest
        if _strip_algorithm(local) == remote:
            return True
    return False
