"""
Microsoft Graph directory gateway.

This module implements the DirectoryGateway interface over the Microsoft Graph
REST API (v1.0). It handles the OAuth2 client credentials flow, paging through
'@odata.nextLink', throttling retries and the mapping of "not found" responses
to empty results.
"""

import ssl
import json
import time
import logging
import threading
from http.client import HTTPSConnection, HTTPException
from typing import Any, Dict, Iterable, Iterator, Optional
from urllib.parse import quote, urlencode, urlsplit

from group_sync.gateways.base import (
    DirectoryGateway,
    GatewayAuthenticationError,
    GatewayConnectionError,
    GatewayError,
    GatewayNotFoundError,
    copy_group_fields,
)
from group_sync.gateways.credentials import Credential
from group_sync.identity import IdentityResolver, normalize_key
from group_sync.retry import MaxRetriesExceeded, RetryPolicy, is_retryable_error

logger = logging.getLogger(__name__)


GRAPH_HOST = 'graph.microsoft.com'
GRAPH_VERSION = 'v1.0'

# Sent with every request; required for advanced queries such as $count with $filter
DEFAULT_HEADERS = {
    'ConsistencyLevel': 'eventual',
    'Accept': 'application/json',
}

USER_ODATA_TYPE = '#microsoft.graph.user'
GROUP_SELECT = 'displayName,id'
GROUP_CREATION_SELECT = 'description,displayName,id,isAssignableToRole,mailEnabled,securityEnabled,mailNickname'

# Seconds before expiry at which a cached token is renewed
TOKEN_EXPIRY_MARGIN = 60


def quote_filter_value(value: str) -> str:
    """Escape a string literal for an OData $filter expression."""
    return value.replace("'", "''")


def prefix_filter(prefixes: Iterable[str]) -> str:
    """Combined display name filter with one 'startswith' disjunct per prefix."""
    return ' or '.join(f"startswith(displayName, '{prefix}')" for prefix in prefixes)


class GraphGateway(DirectoryGateway):
    """
    Directory gateway backed by one Azure AD tenant.

    HTTP connections are kept per thread since they cannot be shared between
    concurrent requests; the access token is shared by all threads.
    """

    def __init__(self, name: str, credential: Credential, timeout: int = 30,
                 max_retries: int = 3, retry_wait: float = 2.0, host: str = GRAPH_HOST):
        super().__init__(name)
        self.credential = credential
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_wait = retry_wait
        self.retry_policy = RetryPolicy(
            max_attempts=max_retries + 1,
            delay=retry_wait,
            backoff=2.0,
            retry_on=(GatewayError,),
            should_retry=is_retryable_error,
        )
        self.host = host
        self.base_path = f'/{GRAPH_VERSION}'
        self.ssl_context = ssl.create_default_context()

        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

        self._token = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # Connections and authentication

    def _create_connection(self, host: str) -> HTTPSConnection:
        return HTTPSConnection(host, context=self.ssl_context, timeout=self.timeout)

    def _get_connection(self) -> HTTPSConnection:
        """Get or create the HTTP connection of the current thread."""
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            connection = self._create_connection(self.host)
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return connection

    def _reset_connection(self):
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            return
        self._local.connection = None
        with self._connections_lock:
            if connection in self._connections:
                self._connections.remove(connection)
        try:
            connection.close()
        except Exception as e:
            logger.debug(f"Error closing connection for {self.name}: {e}")

    def _get_token(self, force_refresh: bool = False) -> str:
        """Return a valid access token, requesting a new one when needed."""
        with self._token_lock:
            if force_refresh or not self._token or time.time() >= self._token_expires_at:
                self._token, expires_in = self._request_token()
                self._token_expires_at = time.time() + max(0, expires_in - TOKEN_EXPIRY_MARGIN)
            return self._token

    def _request_token(self):
        """
        Retrieve an access token using the client credentials flow.

        Returns:
            Tuple of (access_token, expires_in_seconds)

        Raises:
            GatewayAuthenticationError: If the identity platform refuses the request
        """
        body = urlencode(self.credential.token_request_body())
        headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json',
        }

        logger.debug(f"Requesting OAuth2 token for {self.name} (tenant {self.credential.tenant_id})")
        connection = self._create_connection(self.credential.token_host)
        try:
            connection.request('POST', self.credential.token_path, body, headers)
            response = connection.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            raise GatewayConnectionError(f"Token request error for {self.name}: {e}")
        finally:
            connection.close()

        try:
            token_response = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise GatewayAuthenticationError(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")

        access_token = token_response.get('access_token')
        if response.status != 200 or not access_token:
            description = token_response.get('error_description') or token_response.get('error') or response.reason
            raise GatewayAuthenticationError(
                f"OAuth2 token request failed for {self.name}: {response.status} {description}",
                status_code=response.status
            )

        logger.info(f"Successfully obtained OAuth2 token for {self.name}")
        return access_token, int(token_response.get('expires_in', 3600))

    # Requests

    def _build_path(self, path: str, params: Optional[Dict[str, str]] = None) -> str:
        full_path = path if path.startswith(self.base_path + '/') else self.base_path + '/' + path.lstrip('/')
        if params:
            full_path += '?' + urlencode(params, safe="$,'()", quote_via=quote)
        return full_path

    def request(self, method: str, path: str, params: Optional[Dict[str, str]] = None,
                body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to the Graph API, retrying throttled and transient failures.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: API path, relative to the API version or starting with it
            params: Query parameters
            body: Request body, serialized as JSON

        Returns:
            Parsed JSON response (empty for responses without content)

        Raises:
            GatewayNotFoundError: If the object does not exist
            GatewayError: If the request fails
        """
        full_path = self._build_path(path, params)
        try:
            return self.retry_policy.call(
                self._send, method, full_path, body,
                description=f"{method} {full_path} at {self.name}"
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception

    def _send(self, method: str, full_path: str, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        request_body = json.dumps(body) if body is not None else None

        for auth_attempt in range(2):
            headers = dict(DEFAULT_HEADERS)
            headers['Authorization'] = f"Bearer {self._get_token(force_refresh=auth_attempt > 0)}"
            if request_body is not None:
                headers['Content-Type'] = 'application/json'

            try:
                connection = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                connection.request(method, full_path, request_body, headers)
                response = connection.getresponse()
                response_data = response.read().decode('utf-8')
            except (HTTPException, OSError) as e:
                self._reset_connection()
                raise GatewayConnectionError(f"Connection error to {self.name}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt == 0:
                logger.info(f"401 error received, refreshing OAuth2 token for {self.name}")
                continue

            if response.status >= 400:
                raise self._error_for(response, response_data, method, full_path)

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise GatewayError(f"Invalid JSON response from {self.name}: {e}")

        raise GatewayAuthenticationError(f"Authentication failed for {self.name}", status_code=401)

    def _error_for(self, response, response_data: str, method: str, full_path: str) -> GatewayError:
        message = response.reason
        try:
            error = json.loads(response_data).get('error', {}) if response_data else {}
            message = error.get('message') or error.get('code') or message
        except (json.JSONDecodeError, AttributeError):
            pass

        description = f"{method} {full_path} failed at {self.name}: HTTP {response.status}: {message}"
        if response.status == 404:
            return GatewayNotFoundError(description)
        if response.status == 401:
            return GatewayAuthenticationError(description, status_code=401)

        error = GatewayError(description, status_code=response.status)
        retry_after = response.getheader('Retry-After')
        if retry_after and retry_after.isdigit():
            error.retry_after = int(retry_after)
        return error

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        """Yield every item of a collection, following '@odata.nextLink'."""
        page = self.request('GET', path, params)
        while True:
            for item in page.get('value', []):
                yield item
            next_link = page.get('@odata.nextLink')
            if not next_link:
                break
            parts = urlsplit(next_link)
            next_path = parts.path + ('?' + parts.query if parts.query else '')
            page = self.request('GET', next_path)

    # DirectoryGateway interface

    def find_group_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        params = {
            '$select': GROUP_SELECT,
            '$filter': f"startswith(displayName, '{quote_filter_value(name)}')",
        }
        folded = normalize_key(name)
        for group in self._paged('/groups', params):
            if normalize_key(group.get('displayName') or '') == folded:
                return group
        return None

    def get_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.request('GET', f'/groups/{quote(group_id)}', {'$select': GROUP_CREATION_SELECT})
        except GatewayNotFoundError:
            return None

    def find_user_by_key(self, key: str, resolver: IdentityResolver) -> Optional[Dict[str, Any]]:
        select = resolver.select_fields()
        if resolver.is_id:
            try:
                return self.request('GET', f'/users/{quote(key)}', {'$select': select})
            except GatewayNotFoundError:
                return None

        if resolver.is_display_name:
            params = {
                '$select': select,
                '$filter': f"startswith({resolver.attribute}, '{quote_filter_value(key)}')",
            }
        else:
            params = {
                '$select': select,
                '$filter': f"{resolver.attribute} eq '{quote_filter_value(key)}'",
                '$count': 'true',
            }

        for user in self._paged('/users', params):
            if resolver.matches(user, key):
                return user
        return None

    def list_groups_by_prefixes(self, prefixes: Iterable[str]) -> Iterator[Dict[str, Any]]:
        params = {
            '$select': GROUP_SELECT,
            '$filter': prefix_filter(prefixes),
        }
        return self._paged('/groups', params)

    def list_group_members(self, group_id: Optional[str], resolver: IdentityResolver) -> Iterator[Dict[str, Any]]:
        if not group_id:
            return
        params = {'$select': resolver.select_fields()}
        try:
            for member in self._paged(f'/groups/{quote(group_id)}/members', params):
                odata_type = member.get('@odata.type')
                if odata_type and odata_type != USER_ODATA_TYPE:
                    continue
                yield member
        except GatewayNotFoundError:
            logger.debug(f"Group {group_id} not found at {self.name}")

    def create_group(self, group: Dict[str, Any]) -> Dict[str, Any]:
        body = {key: value for key, value in copy_group_fields(group).items() if value is not None}
        return self.request('POST', '/groups', body=body)

    def add_member(self, group_id: str, user_id: str):
        body = {'@odata.id': f"https://{self.host}/{GRAPH_VERSION}/directoryObjects/{user_id}"}
        self.request('POST', f'/groups/{quote(group_id)}/members/$ref', body=body)

    def remove_member(self, group_id: str, user_id: str):
        self.request('DELETE', f'/groups/{quote(group_id)}/members/{quote(user_id)}/$ref')

    def close(self):
        """Close every HTTP connection opened by this gateway."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            try:
                connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
        self._local = threading.local()

    def __repr__(self) -> str:
        return f"GraphGateway({self.name!r}, tenant={self.credential.tenant_id!r})"
