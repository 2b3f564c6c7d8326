# Copyright DataStax, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import unittest

import pytest

from cqlsync import (CassandraException, ConnectionException, ConsistencyLevel,
                     DriverException, ProtocolError, QueryException)
from cqlsync.database import Database, DatabaseOptions
from cqlsync.protocol import (ExecuteMessage, InvalidRequestException, PrepareMessage,
                              QueryMessage, StartupMessage, read_longstring)
from cqlsync.query import tuple_factory

from tests.unit.utils import (MockTransportFactory, authenticate_response, error_response,
                              prepared_response, read_execute_request, read_query_request,
                              ready_response, rows_response, schema_change_response,
                              set_keyspace_response, void_response)


class DatabaseOptionsTest(unittest.TestCase):

    def test_defaults(self):
        options = DatabaseOptions()
        assert options.consistency_read == ConsistencyLevel.ONE
        assert options.consistency_write == ConsistencyLevel.QUORUM
        assert options.connection_options == {'CQL_VERSION': '3.0.0'}
        assert options.cql_version == '3.0.0'
        assert options.startup_options == {}
        assert options.protocol_version == 1

    def test_consistency_names(self):
        options = DatabaseOptions(consistency_read='local_quorum', consistency_write='ALL')
        assert options.consistency_read == ConsistencyLevel.LOCAL_QUORUM
        assert options.consistency_write == ConsistencyLevel.ALL

    def test_invalid_consistency(self):
        with pytest.raises(ValueError):
            DatabaseOptions(consistency_read='SOME')
        with pytest.raises(ValueError):
            DatabaseOptions(consistency_write=42)

    def test_connection_options_merge(self):
        options = DatabaseOptions(connection_options={'CQL_VERSION': '3.1.0', 'COMPRESSION': 'none'})
        assert options.cql_version == '3.1.0'
        assert options.startup_options == {'COMPRESSION': 'none'}

    def test_invalid_connection_options(self):
        with pytest.raises(ValueError):
            DatabaseOptions(connection_options=['CQL_VERSION'])
        with pytest.raises(ValueError):
            DatabaseOptions(connection_options={'CQL_VERSION': 3})

    def test_invalid_protocol_version(self):
        with pytest.raises(ValueError):
            DatabaseOptions(protocol_version=4)

    def test_invalid_row_factory(self):
        with pytest.raises(ValueError):
            DatabaseOptions(row_factory='dict')

    def test_from_dict(self):
        options = DatabaseOptions.from_dict({'consistency_read': 'TWO'})
        assert options.consistency_read == ConsistencyLevel.TWO
        with pytest.raises(ValueError):
            DatabaseOptions.from_dict({'consistency': 'ONE'})


class DatabaseTest(unittest.TestCase):

    def make_database(self, responses, keyspace='', nodes=('db1',), options=None):
        factory = MockTransportFactory(responses)
        database = Database(list(nodes), keyspace, options, transport_factory=factory)
        return database, factory

    def connected(self, responses, options=None):
        database, factory = self.make_database([ready_response()] + list(responses), options=options)
        database.connect()
        return database, factory.transport

    def sent_after_startup(self, transport):
        return transport.requests()[1:]


class ConnectTest(DatabaseTest):

    def test_connect(self):
        database, factory = self.make_database([ready_response()])
        assert not database.is_connected
        assert database.connect()
        assert database.is_connected
        request, = factory.transport.requests()
        assert request.opcode == StartupMessage.opcode

    def test_connect_is_idempotent(self):
        database, factory = self.make_database([ready_response()])
        database.connect()
        database.connect()
        assert len(factory.transports) == 1
        assert len(factory.transport.sent) == 1

    def test_connect_selects_keyspace(self):
        database, factory = self.make_database([ready_response(), set_keyspace_response('users')],
                                               keyspace='users')
        database.connect()
        assert database.keyspace == 'users'

        startup, use = factory.transport.requests()
        assert use.opcode == QueryMessage.opcode
        assert read_query_request(use) == ("USE users;", ConsistencyLevel.QUORUM)

    def test_connect_with_authentication(self):
        factory = MockTransportFactory([authenticate_response(), ready_response()])
        database = Database([{'host': 'db1', 'username': 'u', 'password': 'p'}],
                            transport_factory=factory)
        database.connect()
        assert database.is_connected
        assert len(factory.transport.sent) == 2

    def test_keyspace_failure_closes_connection(self):
        database, factory = self.make_database(
            [ready_response(), error_response(0x2200, "Keyspace 'missing' does not exist")],
            keyspace='missing')
        with pytest.raises(CassandraException) as exc_info:
            database.connect()
        assert isinstance(exc_info.value.error, InvalidRequestException)
        assert not database.is_connected
        assert factory.transport.closed

    def test_no_reachable_node(self):
        database, factory = self.make_database([], nodes=('db1', 'db2'))
        factory.refuse.update([('db1', 9042), ('db2', 9042)])
        with pytest.raises(ConnectionException) as exc_info:
            database.connect()
        assert len(exc_info.value.errors) == 2

    def test_disconnect(self):
        database, transport = self.connected([])
        assert database.disconnect()
        assert not database.is_connected
        assert transport.closed
        assert database.disconnect()

    def test_context_manager(self):
        database, factory = self.make_database([ready_response()])
        with database as db:
            assert db is database
            assert db.is_connected
        assert not database.is_connected
        assert factory.transport.closed

    def test_options_mapping(self):
        database, factory = self.make_database([], options={'consistency_read': 'QUORUM'})
        assert database.options.consistency_read == ConsistencyLevel.QUORUM
        with pytest.raises(ValueError):
            Database(['db1'], options={'bogus': 1})

    def test_set_keyspace_while_disconnected(self):
        database, factory = self.make_database([])
        database.set_keyspace('other')
        assert database.keyspace == 'other'
        assert factory.attempts == []

    def test_set_keyspace_while_connected(self):
        database, transport = self.connected([set_keyspace_response('other')])
        database.set_keyspace('other')
        assert database.keyspace == 'other'
        use, = self.sent_after_startup(transport)
        assert read_query_request(use) == ("USE other;", ConsistencyLevel.QUORUM)

    def test_set_keyspace_error(self):
        database, transport = self.connected([error_response(0x2200, "Keyspace 'nope' does not exist")])
        with pytest.raises(CassandraException):
            database.set_keyspace('nope')


class QueryTest(DatabaseTest):

    def test_query_requires_connection(self):
        database, factory = self.make_database([])
        with pytest.raises(ConnectionException):
            database.query("SELECT * FROM t")

    def test_read_and_write_consistency(self):
        database, transport = self.connected([void_response(), void_response(), void_response()],
                                             options={'consistency_read': 'TWO',
                                                      'consistency_write': 'ALL'})
        database.query("SELECT * FROM t")
        database.query("INSERT INTO t (a) VALUES (1)")
        database.query("SELECT * FROM t", consistency_level=ConsistencyLevel.ANY)

        select, insert, explicit = self.sent_after_startup(transport)
        assert read_query_request(select) == ("SELECT * FROM t", ConsistencyLevel.TWO)
        assert read_query_request(insert) == ("INSERT INTO t (a) VALUES (1)", ConsistencyLevel.ALL)
        assert read_query_request(explicit)[1] == ConsistencyLevel.ANY

    def test_default_consistency(self):
        database, transport = self.connected([void_response(), void_response()])
        database.query("select * from t")
        database.query("CREATE TABLE t (a int PRIMARY KEY)")
        select, create = self.sent_after_startup(transport)
        assert read_query_request(select)[1] == ConsistencyLevel.ONE
        assert read_query_request(create)[1] == ConsistencyLevel.QUORUM

    def test_rows(self):
        rows = rows_response([('id', 0x0009), ('name', 0x000A)],
                             [[b'\x00\x00\x00\x01', b'alice'], [b'\x00\x00\x00\x02', b'bob']])
        database, transport = self.connected([rows])
        assert database.query("SELECT id, name FROM t") == [{'id': 1, 'name': 'alice'},
                                                            {'id': 2, 'name': 'bob'}]

    def test_row_factory(self):
        rows = rows_response([('id', 0x0009)], [[b'\x00\x00\x00\x01']])
        database, transport = self.connected([rows], options={'row_factory': tuple_factory})
        assert database.query("SELECT id FROM t") == [(1,)]

    def test_void_result(self):
        database, transport = self.connected([void_response()])
        assert database.query("INSERT INTO t (a) VALUES (1)") is True

    def test_use_result_updates_keyspace(self):
        database, transport = self.connected([set_keyspace_response('ks2')])
        assert database.query("USE ks2") == 'ks2'
        assert database.keyspace == 'ks2'

    def test_schema_change_result(self):
        database, transport = self.connected([schema_change_response('CREATED', 'ks', 't')])
        assert database.query("CREATE TABLE ks.t (a int PRIMARY KEY)") == \
            {'change_type': 'CREATED', 'keyspace': 'ks', 'table': 't'}

    def test_unexpected_response(self):
        database, transport = self.connected([ready_response()])
        with pytest.raises(ProtocolError):
            database.query("SELECT * FROM t")

    def test_consistency_override_by_name(self):
        database, transport = self.connected([void_response()])
        database.query("INSERT INTO t (a) VALUES (1)", consistency_level='local_quorum')
        insert, = self.sent_after_startup(transport)
        assert read_query_request(insert)[1] == ConsistencyLevel.LOCAL_QUORUM

    def test_invalid_consistency_override(self):
        database, transport = self.connected([])
        with pytest.raises(ValueError):
            database.query("INSERT INTO t (a) VALUES (1)", consistency_level='SOME')
        with pytest.raises(ValueError):
            database.query("SELECT * FROM t", consistency_level=42)
        assert self.sent_after_startup(transport) == []

    def test_server_error(self):
        database, transport = self.connected([error_response(0x2000, "line 1:0 no viable alternative")])
        with pytest.raises(CassandraException) as exc_info:
            database.query("SELEC * FROM t")
        assert exc_info.value.code == 0x2000
        # the connection stays usable after a server error
        assert database.is_connected

    def test_query_with_values(self):
        database, transport = self.connected([
            prepared_response(b'\x0a\x0b', [('id', 0x0009), ('name', 0x000A)]),
            void_response()])
        assert database.query("INSERT INTO t (id, name) VALUES (:id, :name)",
                              {'name': 'alice', 'id': 7}) is True

        prepare, execute = self.sent_after_startup(transport)
        assert prepare.opcode == PrepareMessage.opcode
        assert execute.opcode == ExecuteMessage.opcode
        assert read_execute_request(execute) == (b'\x0a\x0b', [b'\x00\x00\x00\x07', b'alice'],
                                                 ConsistencyLevel.QUORUM)

    def test_query_with_positional_values(self):
        database, transport = self.connected([
            prepared_response(b'\x01', [('id', 0x0009)]),
            rows_response([('id', 0x0009)], [[b'\x00\x00\x00\x07']])])
        assert database.query("SELECT id FROM t WHERE id = ?", [7]) == [{'id': 7}]
        prepare, execute = self.sent_after_startup(transport)
        assert read_execute_request(execute) == (b'\x01', [b'\x00\x00\x00\x07'], ConsistencyLevel.ONE)

    def test_prepare_failure(self):
        database, transport = self.connected([error_response(0x2200, "unconfigured table t")])
        with pytest.raises(QueryException) as exc_info:
            database.query("INSERT INTO t (a) VALUES (:a)", {'a': 1})
        assert isinstance(exc_info.value.response, InvalidRequestException)
        assert len(self.sent_after_startup(transport)) == 1

    def test_execute_failure(self):
        database, transport = self.connected([
            prepared_response(b'\x01', [('a', 0x0009)]),
            error_response(0x1100, "Operation timed out")])
        with pytest.raises(CassandraException):
            database.query("INSERT INTO t (a) VALUES (:a)", {'a': 1})


class BatchTest(DatabaseTest):

    def test_begin_batch(self):
        database, factory = self.make_database([])
        assert not database.is_batching
        database.begin_batch()
        assert database.is_batching

    def test_begin_batch_is_idempotent(self):
        database, factory = self.make_database([])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (:a)", {'a': 1})
        database.begin_batch()
        assert len(database._batch) == 1

    def test_mutations_are_buffered(self):
        database, transport = self.connected([])
        database.begin_batch()
        assert database.query("INSERT INTO t (a) VALUES (1)") is True
        assert database.query("update t set a = 2 where k = 1") is True
        assert database.query("DELETE FROM t WHERE k = 3") is True
        assert self.sent_after_startup(transport) == []

    def test_reads_bypass_batch(self):
        rows = rows_response([('a', 0x0009)], [[b'\x00\x00\x00\x01']])
        database, transport = self.connected([rows])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (1)")
        assert database.query("SELECT a FROM t") == [{'a': 1}]
        select, = self.sent_after_startup(transport)
        assert read_query_request(select) == ("SELECT a FROM t", ConsistencyLevel.ONE)
        assert len(database._batch) == 1

    def test_apply_batch(self):
        database, transport = self.connected([void_response()])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (1)")
        database.query("DELETE FROM t WHERE a = 2")
        assert database.apply_batch() is True
        assert not database.is_batching

        batch, = self.sent_after_startup(transport)
        assert read_query_request(batch) == ("BEGIN BATCH\n"
                                             "INSERT INTO t (a) VALUES (1);\n"
                                             "DELETE FROM t WHERE a = 2;\n"
                                             "APPLY BATCH;", ConsistencyLevel.QUORUM)

    def test_apply_batch_consistency(self):
        database, transport = self.connected([void_response()])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (1)", consistency_level=ConsistencyLevel.ONE)
        database.apply_batch(ConsistencyLevel.ALL)
        batch, = self.sent_after_startup(transport)
        assert read_query_request(batch)[1] == ConsistencyLevel.ALL

    def test_colliding_parameters(self):
        database, transport = self.connected([
            prepared_response(b'\x01', [('x', 0x0009), ('x_1', 0x0009)]),
            void_response()])
        database.begin_batch()
        database.query("INSERT INTO t (x) VALUES (:x)", {'x': 1})
        database.query("INSERT INTO t (x) VALUES (:x)", {'x': 2})
        database.apply_batch()

        prepare, execute = self.sent_after_startup(transport)
        assert read_longstring(prepare.reader()) == ("BEGIN BATCH\n"
                                         "INSERT INTO t (x) VALUES (:x);\n"
                                         "INSERT INTO t (x) VALUES (:x_1);\n"
                                         "APPLY BATCH;")
        assert read_execute_request(execute) == (b'\x01', [b'\x00\x00\x00\x01', b'\x00\x00\x00\x02'],
                                                 ConsistencyLevel.QUORUM)

    def test_apply_batch_consistency_by_name(self):
        database, transport = self.connected([void_response()])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (1)")
        database.apply_batch('ALL')
        batch, = self.sent_after_startup(transport)
        assert read_query_request(batch)[1] == ConsistencyLevel.ALL

    def test_apply_batch_invalid_consistency(self):
        database, transport = self.connected([])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (1)")
        with pytest.raises(ValueError):
            database.apply_batch('SOME')
        assert self.sent_after_startup(transport) == []
        # the buffered statements survive a bad argument
        assert database.is_batching

    def test_mixed_case_parameters(self):
        database, transport = self.connected([
            prepared_response(b'\x01', [('userid', 0x0009), ('userid_1', 0x0009)]),
            void_response()])
        database.begin_batch()
        database.query("INSERT INTO t (u) VALUES (:userId)", {'userId': 1})
        database.query("INSERT INTO t (u) VALUES (:userid)", {'userid': 2})
        database.apply_batch()

        prepare, execute = self.sent_after_startup(transport)
        assert read_longstring(prepare.reader()) == ("BEGIN BATCH\n"
                                                     "INSERT INTO t (u) VALUES (:userId);\n"
                                                     "INSERT INTO t (u) VALUES (:userid_1);\n"
                                                     "APPLY BATCH;")
        assert read_execute_request(execute)[1] == [b'\x00\x00\x00\x01', b'\x00\x00\x00\x02']

    def test_apply_batch_without_begin(self):
        database, transport = self.connected([])
        with pytest.raises(DriverException):
            database.apply_batch()

    def test_apply_batch_resets_on_failure(self):
        database, transport = self.connected([error_response(0x1100, "Operation timed out")])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (1)")
        with pytest.raises(CassandraException):
            database.apply_batch()
        assert not database.is_batching

    def test_apply_batch_requires_connection(self):
        database, factory = self.make_database([])
        database.begin_batch()
        database.query("INSERT INTO t (a) VALUES (1)")
        with pytest.raises(ConnectionException):
            database.apply_batch()
        assert not database.is_batching

    def test_positional_values_in_batch(self):
        database, factory = self.make_database([])
        database.begin_batch()
        with pytest.raises(ValueError):
            database.query("INSERT INTO t (a) VALUES (?)", [1])
