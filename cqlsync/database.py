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

"""
This module houses the main class you will interact with,
:class:`~.Database`.
"""

from collections.abc import Mapping
import logging
import socket

from cqlsync import (ConsistencyLevel, ConnectionException, DriverException,
                     ProtocolError, ProtocolVersion, QueryException,
                     consistency_value_to_name)
from cqlsync.cluster import Cluster
from cqlsync.connection import Connection, DEFAULT_CQL_VERSION
from cqlsync.protocol import (ErrorMessage, ExecuteMessage, PrepareMessage,
                              PreparedResultMessage, QueryMessage, ResultMessage,
                              RowsResultMessage, SchemaChangeResultMessage,
                              SetKeyspaceResultMessage)
from cqlsync.query import (BatchBuffer, bind_params, dict_factory, is_mutation,
                           resolve_consistency)

log = logging.getLogger(__name__)


def _coerce_consistency(name, value):
    if isinstance(value, str):
        try:
            return ConsistencyLevel.name_to_value[value.upper()]
        except KeyError:
            raise ValueError("Unknown consistency level for %s: %r" % (name, value))
    if isinstance(value, bool) or value not in ConsistencyLevel.value_to_name:
        raise ValueError("Unknown consistency level for %s: %r" % (name, value))
    return value


class DatabaseOptions(object):
    """
    Configuration for a :class:`.Database`.  Every field has a default;
    values are validated when the options are built.
    """

    consistency_read = ConsistencyLevel.ONE
    """
    The :class:`~.ConsistencyLevel` used for ``SELECT`` statements when no
    level is passed to :meth:`.Database.query`.  Names such as ``"ONE"``
    are accepted as well as the numeric codes.
    """

    consistency_write = ConsistencyLevel.QUORUM
    """
    The :class:`~.ConsistencyLevel` used for every other statement when no
    level is passed to :meth:`.Database.query`.
    """

    connection_options = None
    """
    The STARTUP options map.  Defaults to ``{'CQL_VERSION': '3.0.0'}``;
    supplied keys are laid over the defaults.
    """

    protocol_version = ProtocolVersion.V1
    """
    The native protocol version to speak.
    """

    row_factory = staticmethod(dict_factory)
    """
    A callable ``(colnames, rows) -> rows`` shaping the rows returned by
    :meth:`.Database.query`.  See :mod:`cqlsync.query` for the built-in
    factories.
    """

    _fields = ('consistency_read', 'consistency_write', 'connection_options',
               'protocol_version', 'row_factory')

    def __init__(self, consistency_read=ConsistencyLevel.ONE,
                 consistency_write=ConsistencyLevel.QUORUM,
                 connection_options=None,
                 protocol_version=ProtocolVersion.V1,
                 row_factory=dict_factory):
        self.consistency_read = _coerce_consistency('consistency_read', consistency_read)
        self.consistency_write = _coerce_consistency('consistency_write', consistency_write)

        merged = {'CQL_VERSION': DEFAULT_CQL_VERSION}
        if connection_options is not None:
            if not isinstance(connection_options, Mapping):
                raise ValueError("connection_options must be a mapping, got %r" % (connection_options,))
            merged.update(connection_options)
        for key, value in merged.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValueError("connection_options keys and values must be strings, got %r: %r"
                                 % (key, value))
        self.connection_options = merged

        if protocol_version not in ProtocolVersion.SUPPORTED_VERSIONS:
            raise ValueError("Unsupported protocol version: %r" % (protocol_version,))
        self.protocol_version = protocol_version

        if not callable(row_factory):
            raise ValueError("row_factory must be callable, got %r" % (row_factory,))
        self.row_factory = row_factory

    @classmethod
    def from_dict(cls, options):
        """
        Builds options from a plain mapping using the field names as keys.
        Unknown keys raise :exc:`ValueError`.
        """
        unknown = set(options) - set(cls._fields)
        if unknown:
            raise ValueError("Unknown database options: %s" % ', '.join(sorted(unknown)))
        return cls(**options)

    @property
    def cql_version(self):
        return self.connection_options['CQL_VERSION']

    @property
    def startup_options(self):
        """
        The STARTUP options other than ``CQL_VERSION``.
        """
        return dict((k, v) for k, v in self.connection_options.items() if k != 'CQL_VERSION')

    def __repr__(self):
        return '<%s(%s)>' % (self.__class__.__name__, ', '.join(
            '%s=%r' % (f, getattr(self, f)) for f in self._fields))


class Database(object):
    """
    The main class to use when interacting with a Cassandra cluster.

    Example usage::

        >>> from cqlsync.database import Database
        >>> db = Database(['10.1.1.3:9042', {'host': '10.1.1.4', 'username': 'u', 'password': 'p'}],
        ...               keyspace='users')
        >>> db.connect()
        >>> rows = db.query("SELECT * FROM users WHERE id = :id", {'id': 42})
        >>> db.begin_batch()
        >>> db.query("INSERT INTO users (id, name) VALUES (:id, :name)", {'id': 1, 'name': 'a'})
        >>> db.query("INSERT INTO users (id, name) VALUES (:id, :name)", {'id': 2, 'name': 'b'})
        >>> db.apply_batch()
        >>> db.disconnect()

    A :class:`.Database` holds one connection and must not be used from
    several threads at once without external locking.  Independent
    instances share nothing.
    """

    cluster = None
    """
    The :class:`~cqlsync.cluster.Cluster` of configured nodes.
    """

    options = None
    """
    The :class:`.DatabaseOptions` in effect.
    """

    _batch = None

    def __init__(self, nodes, keyspace='', options=None,
                 transport_factory=socket.create_connection):
        """
        `nodes` is the list of node entries accepted by
        :meth:`~cqlsync.cluster.Node.from_config`.  `options` may be a
        :class:`.DatabaseOptions` or a mapping of its field names.
        """
        self.cluster = Cluster(nodes)
        if isinstance(options, DatabaseOptions):
            self.options = options
        else:
            self.options = DatabaseOptions.from_dict(options or {})
        self._connection = Connection(self.cluster, self.options.protocol_version,
                                      transport_factory=transport_factory)
        self._keyspace = keyspace or None

    @property
    def keyspace(self):
        """
        The keyspace selected with ``USE`` on connect, or :const:`None`.
        """
        return self._keyspace

    @property
    def connection(self):
        return self._connection

    @property
    def is_connected(self):
        return self._connection.is_ready

    @property
    def is_batching(self):
        return self._batch is not None

    def connect(self):
        """
        Opens a connection to a random node, performs the startup handshake
        and selects the configured keyspace.  Calling this on a database that
        is already connected does nothing.

        If the handshake or the keyspace selection fails the transport is
        closed again, so a later call starts from scratch.
        """
        if self._connection.is_ready:
            return True

        self._connection.connect()
        self._connection.startup(self.options.cql_version, self.options.startup_options)
        if self._keyspace:
            try:
                self._use_keyspace(self._keyspace)
            except DriverException:
                self._connection.disconnect()
                raise
        log.debug("Database connected to %s", self._connection.node)
        return True

    def disconnect(self):
        return self._connection.disconnect()

    def set_keyspace(self, keyspace):
        """
        Records `keyspace` and, when connected, switches to it with a ``USE``
        statement at ``QUORUM``.
        """
        self._keyspace = keyspace
        if self._connection.is_ready:
            self._use_keyspace(keyspace)

    def _use_keyspace(self, keyspace):
        log.debug("Switching to keyspace %s", keyspace)
        response = self._connection.send_msg(
            QueryMessage(query="USE %s;" % (keyspace,), consistency_level=ConsistencyLevel.QUORUM))
        if isinstance(response, ErrorMessage):
            raise response.to_exception()

    def begin_batch(self):
        """
        Starts buffering ``INSERT``, ``UPDATE`` and ``DELETE`` statements
        passed to :meth:`query`.  Does nothing if a batch is already open.
        """
        if self._batch is None:
            log.debug("Beginning batch")
            self._batch = BatchBuffer()

    def apply_batch(self, consistency_level=ConsistencyLevel.QUORUM):
        """
        Sends the buffered statements as one batch and returns the result.
        The batch is discarded whether or not execution succeeds.
        """
        batch = self._batch
        if batch is None:
            raise DriverException("No batch in progress; call begin_batch() first")
        consistency_level = _coerce_consistency('consistency_level', consistency_level)

        log.debug("Applying batch of %d statements at %s", len(batch),
                  consistency_value_to_name(consistency_level))
        try:
            return self._execute(batch.close(), batch.parameters, consistency_level)
        finally:
            self._batch = None

    def query(self, query_string, values=None, consistency_level=None):
        """
        Executes `query_string` and returns its result.

        `values` binds named (``:name``) markers from a mapping or positional
        (``?``) markers from a sequence; statements with values are prepared
        and then executed.  Without `consistency_level`, ``SELECT`` statements
        run at :attr:`.DatabaseOptions.consistency_read` and all others at
        :attr:`.DatabaseOptions.consistency_write`.

        While a batch is open, mutations are buffered instead of sent and
        ``True`` is returned immediately.

        The return value is a list of rows for row results, the keyspace name
        for a keyspace change, a description dict for a schema change, and
        ``True`` for other results.
        """
        if consistency_level is not None:
            consistency_level = _coerce_consistency('consistency_level', consistency_level)

        if self._batch is not None and is_mutation(query_string):
            self._batch.add(query_string, values)
            return True

        consistency_level = resolve_consistency(query_string, consistency_level,
                                                self.options.consistency_read,
                                                self.options.consistency_write)
        return self._execute(query_string, values, consistency_level)

    def _execute(self, query_string, values, consistency_level):
        if not self._connection.is_ready:
            raise ConnectionException("Not connected; call connect() before executing queries")

        if not values:
            response = self._connection.send_msg(QueryMessage(query_string, consistency_level))
        else:
            prepared = self._connection.send_msg(PrepareMessage(query_string))
            if not isinstance(prepared, PreparedResultMessage):
                raise QueryException(prepared)
            params = bind_params(prepared.bind_metadata, values, self.options.protocol_version)
            response = self._connection.send_msg(
                ExecuteMessage(prepared.query_id, params, consistency_level))

        return self._handle_response(response)

    def _handle_response(self, response):
        if isinstance(response, ErrorMessage):
            raise response.to_exception()
        if isinstance(response, RowsResultMessage):
            return self.options.row_factory(response.column_names, response.parsed_rows)
        if isinstance(response, SetKeyspaceResultMessage):
            self._keyspace = response.new_keyspace
            return response.new_keyspace
        if isinstance(response, SchemaChangeResultMessage):
            return response.schema_change_event
        if isinstance(response, ResultMessage):
            return True

        raise ProtocolError("Unexpected response to a query from %s: %r" % (self._connection.node, response))

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.disconnect()
