"""
JSON REST client shared by the Microsoft Graph source and the registry store.

Wraps ``http.client`` with TLS setup (custom PEM or PKCS#12 trust stores),
static token headers and the OAuth2 client credentials flow.
"""

import json
import ssl
import time
import logging
from typing import Dict, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urljoin, urlencode
from http.client import HTTPException, HTTPSConnection, HTTPConnection

logger = logging.getLogger(__name__)

# Authorization schemes for tokens passed in configuration
STATIC_TOKEN_SCHEMES = {
    'oauth': 'OAuth',
    'bearer': 'Bearer',
}
PKCS12_EXTENSIONS = ('.p12', '.pfx')
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class RestAPIError(Exception):
    """Base exception for REST API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RestAuthenticationError(RestAPIError):
    """Raised when authentication to the API fails."""
    pass


def open_connection(url: str, ssl_context: Optional[ssl.SSLContext],
                    timeout: float) -> Union[HTTPSConnection, HTTPConnection]:
    parsed = urlparse(url)
    if parsed.scheme == 'https':
        return HTTPSConnection(parsed.netloc, context=ssl_context, timeout=timeout)
    return HTTPConnection(parsed.netloc, timeout=timeout)


class RestClientBase:
    """
    Base class for JSON REST API clients.

    The configuration dictionary needs ``base_url``. Optional keys are
    ``name``, ``timeout``, ``verify_ssl``, ``truststore_file``,
    ``truststore_password`` and ``auth``. ``auth.method`` is ``oauth`` or
    ``bearer`` with a ``token``, or ``oauth2`` with ``client_id``,
    ``client_secret``, ``token_url`` and an optional ``scope``.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.name = config.get('name', 'api')
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.auth_method = (self.auth_config.get('method') or '').lower()
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        parsed_url = urlparse(self.base_url)
        self.host = parsed_url.netloc
        self.base_path = parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = self._create_ssl_context() if parsed_url.scheme == 'https' else None

        self.auth_headers = {}
        self._token_expires_at = None
        self._setup_authentication()

    def _create_ssl_context(self) -> ssl.SSLContext:
        if not self.verify_ssl:
            logger.warning(f"SSL verification disabled for {self.name}")
            return ssl._create_unverified_context()

        context = ssl.create_default_context()
        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(context, truststore_file)
        return context

    def _load_truststore(self, context: ssl.SSLContext, truststore_file: str):
        """
        Add CA certificates to the context.

        Files ending in ``.p12``/``.pfx`` are read as PKCS#12 bundles, anything
        else as PEM.

        Raises:
            RestAPIError: If the trust store can't be read
        """
        try:
            if truststore_file.lower().endswith(PKCS12_EXTENSIONS):
                context.load_verify_locations(cadata=self._pkcs12_to_pem(truststore_file))
            else:
                context.load_verify_locations(cafile=truststore_file)
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load truststore {truststore_file} for {self.name}: {e}")
            raise RestAPIError(f"Truststore loading failed: {e}")
        logger.info(f"Loaded truststore {truststore_file} for {self.name}")

    def _pkcs12_to_pem(self, truststore_file: str) -> str:
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.serialization import pkcs12

        password = self.config.get('truststore_password')
        with open(truststore_file, 'rb') as f:
            _, certificate, additional = pkcs12.load_key_and_certificates(
                f.read(), password.encode() if password else None
            )

        certificates = ([certificate] if certificate else []) + list(additional or [])
        if not certificates:
            raise ValueError(f"no certificates in {truststore_file}")
        return '\n'.join(cert.public_bytes(serialization.Encoding.PEM).decode() for cert in certificates)

    def _setup_authentication(self):
        if self.auth_method in STATIC_TOKEN_SCHEMES:
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"{STATIC_TOKEN_SCHEMES[self.auth_method]} {token}"
            else:
                logger.error(f"{self.auth_method} auth configured but missing token for {self.name}")
        elif self.auth_method == 'oauth2':
            missing = [key for key in ('client_id', 'client_secret', 'token_url') if not self.auth_config.get(key)]
            if missing:
                logger.error(f"OAuth2 auth for {self.name} is missing: {', '.join(missing)}")
        elif self.auth_method:
            logger.warning(f"Unknown authentication method '{self.auth_method}' for {self.name}")

    def _fetch_oauth2_token(self):
        """
        Obtain an access token with the client credentials grant.

        Raises:
            RestAuthenticationError: If the token endpoint rejects the request
                or can't be reached
        """
        token_url = self.auth_config.get('token_url')
        form = {
            'grant_type': 'client_credentials',
            'client_id': self.auth_config.get('client_id'),
            'client_secret': self.auth_config.get('client_secret'),
        }
        if self.auth_config.get('scope'):
            form['scope'] = self.auth_config['scope']
        if not (token_url and form['client_id'] and form['client_secret']):
            raise RestAuthenticationError(f"OAuth2 configuration incomplete for {self.name}")

        token_conn = open_connection(token_url, self.ssl_context, self.timeout)
        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', urlparse(token_url).path or '/', urlencode(form), {
                'Content-Type': 'application/x-www-form-urlencoded',
                'Accept': 'application/json',
            })
            response = token_conn.getresponse()
            payload = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            raise RestAuthenticationError(f"OAuth2 token request to {self.name} failed: {e}")
        finally:
            token_conn.close()

        if response.status != 200:
            raise RestAuthenticationError(
                f"OAuth2 token request for {self.name} returned {response.status} {response.reason}",
                response.status,
            )
        try:
            token = json.loads(payload)
        except json.JSONDecodeError as e:
            raise RestAuthenticationError(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")
        if not token.get('access_token'):
            raise RestAuthenticationError(f"OAuth2 response for {self.name} has no access_token")

        self.auth_headers['Authorization'] = f"Bearer {token['access_token']}"
        expires_in = token.get('expires_in')
        self._token_expires_at = (time.time() + int(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS
                                  if expires_in else None)
        logger.info(f"Obtained OAuth2 token for {self.name}")

    def _has_fresh_token(self) -> bool:
        if 'Authorization' not in self.auth_headers:
            return False
        return self._token_expires_at is None or time.time() < self._token_expires_at

    def authenticate(self) -> bool:
        """
        Make sure requests carry valid credentials, fetching an OAuth2 token when needed.

        Returns:
            True if the client is ready to send authenticated requests
        """
        if self.auth_method == 'oauth2':
            if self._has_fresh_token():
                return True
            try:
                self._fetch_oauth2_token()
            except RestAuthenticationError as e:
                logger.error(str(e))
                return False
            return True

        if self.auth_method in STATIC_TOKEN_SCHEMES or not self.auth_method:
            return True

        logger.warning(f"Unknown authentication method '{self.auth_method}' for {self.name}")
        return False

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.connection is None:
            self.connection = open_connection(self.base_url, self.ssl_context, self.timeout)
        return self.connection

    def build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Build the request path. Absolute URLs (paging links) keep their own path and query."""
        if path.startswith(('http://', 'https://')):
            parsed = urlparse(path)
            full_path = parsed.path + (f"?{parsed.query}" if parsed.query else '')
        else:
            full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        if params:
            separator = '&' if '?' in full_path else '?'
            full_path += separator + urlencode(params, safe='$(),=')
        return full_path

    def _send(self, method: str, full_path: str, body: Optional[str],
              headers: Dict[str, str]) -> Tuple[int, str, str]:
        try:
            conn = self._get_connection()
            logger.debug(f"{method} {self.host}{full_path}")
            conn.request(method, full_path, body, headers)
            response = conn.getresponse()
            data = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            self.close_connection()
            raise RestAPIError(f"Connection error to {self.name}: {e}")
        logger.debug(f"Response status: {response.status} {response.reason}")
        return response.status, response.reason, data

    def request(self, method: str, path: str, body: Optional[Any] = None,
                headers: Optional[Dict[str, str]] = None,
                params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make HTTP request to the API.

        A 401 on an OAuth2 client triggers one token refresh and a resend.

        Args:
            method: HTTP method
            path: Endpoint path relative to base_url, or an absolute URL
            body: JSON-serializable request body
            headers: Additional headers
            params: Query string parameters

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            RestAuthenticationError: On 401 responses
            RestAPIError: On connection errors, other error statuses and invalid JSON
        """
        full_path = self.build_path(path, params)
        request_body = json.dumps(body) if body is not None else None

        def build_headers():
            result = {'Accept': 'application/json', **self.auth_headers, **(headers or {})}
            if request_body is not None:
                result['Content-Type'] = 'application/json'
            return result

        status, reason, data = self._send(method, full_path, request_body, build_headers())
        if status == 401 and self.auth_method == 'oauth2':
            logger.info(f"401 from {self.name}, refreshing OAuth2 token")
            self._fetch_oauth2_token()
            status, reason, data = self._send(method, full_path, request_body, build_headers())

        if status == 401:
            raise RestAuthenticationError(f"Authentication failed for {self.name}", 401)
        if status >= 400:
            raise RestAPIError(f"HTTP {status} from {self.name}: {reason} {data[:500]}", status)

        if not data:
            return {}
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise RestAPIError(f"Invalid JSON response from {self.name}: {e}")

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection is not None:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
