#!/usr/bin/env python3
"""
Unit tests for the Microsoft Graph gateway.

HTTP connections are replaced by scripted fakes that replay queued responses
and record every request.
"""

import unittest
import json
import sys
import os
from urllib.parse import parse_qs, unquote, urlsplit

# Add parent directory to path to import group_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from group_sync.gateways.base import GatewayAuthenticationError, GatewayConnectionError, GatewayError
from group_sync.gateways.credentials import AUTHORITY_HOST, SecretCredential
from group_sync.gateways.graph import GRAPH_HOST, GraphGateway, prefix_filter, quote_filter_value
from group_sync.identity import IdentityResolver


class FakeResponse:
    def __init__(self, status, body=None, headers=None, reason='OK'):
        self.status = status
        self.reason = reason
        self._data = json.dumps(body).encode('utf-8') if body is not None else b''
        self._headers = headers or {}

    def read(self):
        return self._data

    def getheader(self, name, default=None):
        return self._headers.get(name, default)


class FakeServer:
    """Queue of responses shared by every connection of a gateway."""

    def __init__(self):
        self.responses = []
        self.requests = []

    def queue(self, status, body=None, headers=None, reason='OK'):
        self.responses.append(FakeResponse(status, body, headers, reason))

    def queue_error(self, error):
        self.responses.append(error)

    def queue_token(self, token='token-1'):
        self.queue(200, {'access_token': token, 'token_type': 'Bearer', 'expires_in': 3600})

    def graph_requests(self):
        return [request for request in self.requests if request['host'] == GRAPH_HOST]


class FakeConnection:
    def __init__(self, server, host):
        self.server = server
        self.host = host
        self._response = None

    def request(self, method, path, body=None, headers=None):
        self.server.requests.append({
            'host': self.host, 'method': method, 'path': path, 'body': body, 'headers': headers or {}
        })
        item = self.server.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        self._response = item

    def getresponse(self):
        return self._response

    def close(self):
        pass


class ScriptedGraphGateway(GraphGateway):
    def __init__(self, server, max_retries=2):
        super().__init__('destination', SecretCredential('tenant-1', 'client-1', 'secret-1'),
                         max_retries=max_retries, retry_wait=0)
        self.server = server

    def _create_connection(self, host):
        return FakeConnection(self.server, host)


def query_of(request):
    return {key: values[0] for key, values in parse_qs(urlsplit(request['path']).query).items()}


class TestFilters(unittest.TestCase):
    """Test cases for OData filter helpers."""

    def test_quote_filter_value(self):
        self.assertEqual(quote_filter_value("O'Brien"), "O''Brien")

    def test_prefix_filter(self):
        self.assertEqual(
            prefix_filter(['SYSTEM.', 'APP.']),
            "startswith(displayName, 'SYSTEM.') or startswith(displayName, 'APP.')"
        )


class TestGraphGateway(unittest.TestCase):
    """Test cases for GraphGateway."""

    def setUp(self):
        """Set up test fixtures."""
        self.server = FakeServer()
        self.server.queue_token()
        self.gateway = ScriptedGraphGateway(self.server)

    def test_token_is_requested_once_and_sent_as_bearer(self):
        self.server.queue(200, {'value': []})
        self.server.queue(200, {'value': []})

        list(self.gateway.list_groups_by_prefixes(['A']))
        list(self.gateway.list_groups_by_prefixes(['B']))

        token_request = self.server.requests[0]
        self.assertEqual(token_request['host'], AUTHORITY_HOST)
        self.assertEqual(token_request['path'], '/tenant-1/oauth2/v2.0/token')
        self.assertIn('grant_type=client_credentials', token_request['body'])
        self.assertEqual(len(self.server.requests), 3)
        for request in self.server.graph_requests():
            self.assertEqual(request['headers']['Authorization'], 'Bearer token-1')
            self.assertEqual(request['headers']['ConsistencyLevel'], 'eventual')

    def test_list_groups_follows_next_link(self):
        self.server.queue(200, {
            'value': [{'id': 'g1', 'displayName': 'SYSTEM.A'}],
            '@odata.nextLink': 'https://graph.microsoft.com/v1.0/groups?$skiptoken=page2',
        })
        self.server.queue(200, {'value': [{'id': 'g2', 'displayName': 'APP.B'}]})

        groups = list(self.gateway.list_groups_by_prefixes(['SYSTEM.', 'APP.']))

        self.assertEqual([group['id'] for group in groups], ['g1', 'g2'])
        first, second = self.server.graph_requests()
        self.assertTrue(first['path'].startswith('/v1.0/groups?'))
        self.assertEqual(query_of(first)['$filter'],
                         "startswith(displayName, 'SYSTEM.') or startswith(displayName, 'APP.')")
        self.assertEqual(query_of(first)['$select'], 'displayName,id')
        self.assertEqual(second['path'], '/v1.0/groups?$skiptoken=page2')

    def test_find_group_by_name_requires_exact_match(self):
        self.server.queue(200, {'value': [
            {'id': 'g1', 'displayName': 'Finance Team'},
            {'id': 'g2', 'displayName': 'FINANCE'},
        ]})

        group = self.gateway.find_group_by_name('Finance')

        self.assertEqual(group['id'], 'g2')
        self.assertEqual(query_of(self.server.graph_requests()[0])['$filter'],
                         "startswith(displayName, 'Finance')")

    def test_find_group_by_name_not_found(self):
        self.server.queue(200, {'value': [{'id': 'g1', 'displayName': 'Finance Team'}]})
        self.assertIsNone(self.gateway.find_group_by_name('Finance'))

    def test_get_group_selects_creation_fields(self):
        self.server.queue(200, {'id': 'g1', 'displayName': 'Finance', 'mailEnabled': False})

        group = self.gateway.get_group('g1')

        self.assertEqual(group['displayName'], 'Finance')
        request = self.server.graph_requests()[0]
        self.assertTrue(request['path'].startswith('/v1.0/groups/g1?'))
        self.assertIn('isAssignableToRole', query_of(request)['$select'])

    def test_get_group_not_found(self):
        self.server.queue(404, {'error': {'code': 'Request_ResourceNotFound'}}, reason='Not Found')
        self.assertIsNone(self.gateway.get_group('gone'))

    def test_find_user_by_display_name_uses_prefix_search(self):
        self.server.queue(200, {'value': [
            {'id': 'u1', 'displayName': "Ann O'Brien Jr"},
            {'id': 'u2', 'displayName': "ann o'brien"},
        ]})

        user = self.gateway.find_user_by_key("Ann O'Brien", IdentityResolver('displayName'))

        self.assertEqual(user['id'], 'u2')
        request = self.server.graph_requests()[0]
        self.assertEqual(query_of(request)['$filter'], "startswith(displayName, 'Ann O''Brien')")
        self.assertNotIn('$count', query_of(request))

    def test_find_user_by_attribute_uses_equality(self):
        self.server.queue(200, {'value': [{'id': 'u1', 'displayName': 'Ann', 'employeeId': 'E1'}]})

        user = self.gateway.find_user_by_key('e1', IdentityResolver('employeeId'))

        self.assertEqual(user['id'], 'u1')
        query = query_of(self.server.graph_requests()[0])
        self.assertEqual(query['$filter'], "employeeId eq 'e1'")
        self.assertEqual(query['$count'], 'true')
        self.assertEqual(query['$select'], 'displayName,id,employeeId')

    def test_find_user_by_id_is_point_lookup(self):
        self.server.queue(200, {'id': 'u1', 'displayName': 'Ann'})
        self.server.queue(404, reason='Not Found')

        resolver = IdentityResolver('id')
        self.assertEqual(self.gateway.find_user_by_key('u1', resolver)['displayName'], 'Ann')
        self.assertIsNone(self.gateway.find_user_by_key('u2', resolver))
        self.assertTrue(self.server.graph_requests()[0]['path'].startswith('/v1.0/users/u1?'))

    def test_list_group_members_skips_non_users(self):
        self.server.queue(200, {'value': [
            {'@odata.type': '#microsoft.graph.user', 'id': 'u1', 'displayName': 'Ann'},
            {'@odata.type': '#microsoft.graph.group', 'id': 'g9', 'displayName': 'Nested'},
            {'@odata.type': '#microsoft.graph.device', 'id': 'd1', 'displayName': 'Laptop'},
        ]})

        members = list(self.gateway.list_group_members('g1', IdentityResolver('displayName')))

        self.assertEqual([member['id'] for member in members], ['u1'])
        self.assertTrue(self.server.graph_requests()[0]['path'].startswith('/v1.0/groups/g1/members?'))

    def test_list_group_members_of_absent_group(self):
        self.server.queue(404, reason='Not Found')

        self.assertEqual(list(self.gateway.list_group_members('gone', IdentityResolver('displayName'))), [])
        self.assertEqual(list(self.gateway.list_group_members(None, IdentityResolver('displayName'))), [])
        self.assertEqual(len(self.server.graph_requests()), 1)

    def test_create_group_posts_copied_fields(self):
        self.server.queue(201, {'id': 'new', 'displayName': 'Finance'})

        created = self.gateway.create_group({
            'id': 'source-id', 'displayName': 'Finance', 'mailEnabled': False, 'securityEnabled': True,
            'mailNickname': 'finance', 'description': None, 'visibility': 'Private',
        })

        self.assertEqual(created['id'], 'new')
        request = self.server.graph_requests()[0]
        self.assertEqual(request['method'], 'POST')
        self.assertEqual(request['path'], '/v1.0/groups')
        self.assertEqual(json.loads(request['body']), {
            'displayName': 'Finance', 'mailEnabled': False, 'securityEnabled': True, 'mailNickname': 'finance',
        })

    def test_add_and_remove_member(self):
        self.server.queue(204)
        self.server.queue(204)

        self.gateway.add_member('g1', 'u1')
        self.gateway.remove_member('g1', 'u1')

        add, remove = self.server.graph_requests()
        self.assertEqual(add['method'], 'POST')
        self.assertEqual(unquote(add['path']), '/v1.0/groups/g1/members/$ref')
        self.assertEqual(json.loads(add['body']),
                         {'@odata.id': 'https://graph.microsoft.com/v1.0/directoryObjects/u1'})
        self.assertEqual(remove['method'], 'DELETE')
        self.assertEqual(unquote(remove['path']), '/v1.0/groups/g1/members/u1/$ref')

    def test_throttled_request_is_retried(self):
        self.server.queue(429, {'error': {'message': 'Too many requests'}}, headers={'Retry-After': '0'},
                          reason='Too Many Requests')
        self.server.queue(200, {'value': [{'id': 'g1', 'displayName': 'A'}]})

        with self.assertLogs('group_sync.retry', level='WARNING'):
            groups = list(self.gateway.list_groups_by_prefixes(['A']))

        self.assertEqual(len(groups), 1)
        self.assertEqual(len(self.server.graph_requests()), 2)

    def test_client_error_is_not_retried(self):
        self.server.queue(400, {'error': {'message': 'One or more added object references already exist'}},
                          reason='Bad Request')

        with self.assertRaises(GatewayError) as context:
            self.gateway.add_member('g1', 'u1')

        self.assertEqual(context.exception.status_code, 400)
        self.assertIn('already exist', str(context.exception))
        self.assertEqual(len(self.server.graph_requests()), 1)

    def test_expired_token_is_refreshed_once(self):
        self.server.queue(401, reason='Unauthorized')
        self.server.queue_token('token-2')
        self.server.queue(200, {'value': []})

        list(self.gateway.list_groups_by_prefixes(['A']))

        first, second = self.server.graph_requests()
        self.assertEqual(first['headers']['Authorization'], 'Bearer token-1')
        self.assertEqual(second['headers']['Authorization'], 'Bearer token-2')

    def test_token_refusal(self):
        server = FakeServer()
        server.queue(401, {'error': 'invalid_client', 'error_description': 'Invalid client secret'})
        gateway = ScriptedGraphGateway(server)

        with self.assertRaises(GatewayAuthenticationError) as context:
            list(gateway.list_groups_by_prefixes(['A']))
        self.assertIn('Invalid client secret', str(context.exception))

    def test_connection_errors_exhaust_retries(self):
        for _ in range(3):
            self.server.queue_error(ConnectionResetError('connection reset by peer'))

        with self.assertLogs('group_sync.retry', level='WARNING'):
            with self.assertRaises(GatewayConnectionError):
                self.gateway.get_group('g1')

        self.assertEqual(len(self.server.graph_requests()), 3)


if __name__ == '__main__':
    unittest.main()
