"""
REST directory client.

Implements the DirectoryPort over HTTP(S) with ``http.client``: SSL/truststore
handling, Basic or Bearer authentication, optional proxying and the paging
headers of the remote user directory.
"""

import os
import ssl
import base64
import logging
import tempfile
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from rest_user_sync.config import parse_bool, proxy_from_environment
from rest_user_sync.models import PageEnvelope, SyncMode
from rest_user_sync.directory.base import (
    DirectoryPort,
    DirectoryAPIError,
    DirectoryAuthenticationError,
    TransportFailure,
    format_timestamp,
    PAGE_HEADER,
    TOTAL_PAGES_HEADER,
    PER_PAGE_HEADER,
)

logger = logging.getLogger(__name__)

SUPPORTED_STORE_TYPES = ('PEM', 'PKCS12')


def read_pkcs12(path: str, password: Optional[str]):
    """Return ``(private_key, certificate, additional_certificates)`` from a PKCS12 bundle."""
    with open(path, 'rb') as f:
        data = f.read()
    return pkcs12.load_key_and_certificates(data, password.encode() if password else None)


def to_pem(certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


def build_auth_headers(auth_config: Dict[str, Any], host: str) -> Dict[str, str]:
    """
    Authorization header for the directory.

    ``method: basic`` needs ``username`` and ``password``; ``method: token``
    (or ``bearer``) needs ``token``. Incomplete settings send no header.
    """
    method = (auth_config.get('method') or '').lower()

    if method == 'basic':
        username, password = auth_config.get('username'), auth_config.get('password')
        if username and password:
            credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
            return {'Authorization': f"Basic {credentials}"}
        logger.error(f"Basic auth configured but missing username or password for {host}")
    elif method in ('token', 'bearer'):
        if auth_config.get('token'):
            return {'Authorization': f"Bearer {auth_config['token']}"}
        logger.error(f"Token auth configured but missing token for {host}")
    elif method:
        logger.warning(f"Unknown authentication method '{method}' for {host}")
    return {}


class HTTPDirectoryClient(DirectoryPort):
    """
    HTTP client for the remote user directory.

    Serves ``GET <base>/full`` and ``GET <base>/updated/<timestamp>`` with the
    page index and page size carried in request headers.
    """

    def __init__(self, url: str, config: Optional[Dict[str, Any]] = None, proxy_enabled: bool = False):
        """
        Initialize directory client.

        Args:
            url: Base URL of the remote directory
            config: ``directory`` configuration section
            proxy_enabled: Route requests through the configured proxy
        """
        self.config = config or {}
        self.base_url = url
        self.auth_config = self.config.get('auth') or {}
        self.verify_ssl = parse_bool(self.config.get('verify_ssl', True))
        self.timeout = self.config.get('timeout', 30)
        self.proxy_enabled = proxy_enabled

        # Parse base URL
        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.proxy = self._resolve_proxy() if proxy_enabled else None

        # HTTP connection
        self.connection = None
        self.ssl_context = None

        self._setup_ssl_context()
        self.auth_headers = build_auth_headers(self.auth_config, self.host)

    def _resolve_proxy(self) -> Optional[Dict[str, Any]]:
        """Proxy from configuration, falling back to the environment."""
        proxy_host = self.config.get('proxy_host')
        if proxy_host:
            return {'host': proxy_host, 'port': int(self.config.get('proxy_port', 8080))}

        proxy = proxy_from_environment()
        if not proxy:
            logger.warning(f"Proxy enabled but no proxy host configured for {self.base_url}")
        return proxy

    def _setup_ssl_context(self):
        """SSL context for https directories: optional custom CAs and client certificate."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()
        for kind, loader in (('truststore', self._load_truststore), ('keystore', self._load_client_cert)):
            path = self.config.get(f'{kind}_file')
            if not path:
                continue
            store_type = str(self.config.get(f'{kind}_type', 'PEM')).upper()
            if store_type not in SUPPORTED_STORE_TYPES:
                raise DirectoryAPIError(f"Unsupported {kind} type: {store_type}")
            try:
                loader(path, store_type, self.config.get(f'{kind}_password'))
            except (OSError, ValueError, ssl.SSLError) as e:
                logger.error(f"Failed to load {kind} {path}: {e}")
                raise DirectoryAPIError(f"Loading {kind} {path} failed: {e}")
            logger.info(f"Loaded {store_type} {kind}: {path}")

    def _load_truststore(self, path: str, store_type: str, password: Optional[str]):
        if store_type == 'PEM':
            self.ssl_context.load_verify_locations(cafile=path)
            return
        _, certificate, extra = read_pkcs12(path, password)
        certificates = ([certificate] if certificate else []) + list(extra or [])
        if not certificates:
            raise ValueError("no certificate in PKCS12 truststore")
        self.ssl_context.load_verify_locations(cadata='\n'.join(to_pem(c).decode() for c in certificates))

    def _load_client_cert(self, path: str, store_type: str, password: Optional[str]):
        if store_type == 'PEM':
            self.ssl_context.load_cert_chain(path, password=password)
            return
        private_key, certificate, _ = read_pkcs12(path, password)
        if not (private_key and certificate):
            raise ValueError("PKCS12 keystore needs both a private key and a certificate")

        # load_cert_chain only reads files, the combined PEM is removed right after
        with tempfile.NamedTemporaryFile(mode='wb', suffix='.pem', delete=False) as chain:
            chain.write(to_pem(certificate))
            chain.write(private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()
            ))
        try:
            self.ssl_context.load_cert_chain(chain.name)
        finally:
            os.unlink(chain.name)

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        https = self.parsed_url.scheme == 'https'

        if self.proxy:
            if https:
                self.connection = HTTPSConnection(
                    self.proxy['host'], self.proxy['port'],
                    context=self.ssl_context, timeout=self.timeout
                )
                self.connection.set_tunnel(self.parsed_url.hostname, self.parsed_url.port)
            else:
                self.connection = HTTPConnection(self.proxy['host'], self.proxy['port'], timeout=self.timeout)
        elif https:
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def _build_path(self, mode: SyncMode) -> str:
        if mode.is_full:
            path = f"{self.base_path}/full"
        else:
            path = f"{self.base_path}/updated/{quote(format_timestamp(mode.since), safe=':')}"

        # Plain HTTP through a proxy needs the absolute URI
        if self.proxy and self.parsed_url.scheme != 'https':
            return f"http://{self.host}{path}"
        return path

    def fetch_page(self, mode: SyncMode, page: int, per_page: int) -> PageEnvelope:
        """
        Fetch one page of users from the remote directory.

        Args:
            mode: Full fetch or updated-since fetch
            page: 1-based page index
            per_page: Page size

        Returns:
            PageEnvelope with the response body and paging headers

        Raises:
            DirectoryAuthenticationError: On HTTP 401/403
            TransportFailure: On connection errors or any other non-2xx status
        """
        path = self._build_path(mode)
        headers = dict(self.auth_headers)
        headers.update({
            'Accept': 'application/json',
            PAGE_HEADER: str(page),
            PER_PAGE_HEADER: str(per_page),
        })

        try:
            conn = self._get_connection()
            logger.debug(f"Making GET request to {self.host}{path} (page {page}, per page {per_page})")
            conn.request('GET', path, None, headers)

            response = conn.getresponse()
            raw_body = response.read()
            logger.debug(f"Response status: {response.status} {response.reason}")

        except (ConnectionError, OSError, HTTPException) as e:
            self.close()
            raise TransportFailure(f"Connection error to {self.host}: {e}")

        if response.status in (401, 403):
            raise DirectoryAuthenticationError(f"Authentication failed for {self.host}: HTTP {response.status}")
        if response.status < 200 or response.status >= 300:
            raise TransportFailure(f"HTTP {response.status}: {response.reason}", status_code=response.status)

        try:
            response_data = raw_body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise TransportFailure(f"Response body from {self.host} is not valid UTF-8: {e}")

        return PageEnvelope(
            body=response_data,
            page_index=response.getheader(PAGE_HEADER),
            total_pages=response.getheader(TOTAL_PAGES_HEADER),
            per_page=response.getheader(PER_PAGE_HEADER),
        )

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.host}: {e}")
            finally:
                self.connection = None
