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

import logging


class NullHandler(logging.Handler):

    def emit(self, record):
        pass

logging.getLogger('cqlsync').addHandler(NullHandler())

__version_info__ = (0, 1, 0)
__version__ = '.'.join(map(str, __version_info__))


class ConsistencyLevel(object):
    """
    Specifies how many replicas must respond for an operation to be considered
    a success.  Reads default to ``ONE`` and writes to ``QUORUM``.
    """

    ANY = 0
    """
    Only requires that one replica receives the write *or* the coordinator
    stores a hint to replay later. Valid only for writes.
    """

    ONE = 1
    """
    Only one replica needs to respond to consider the operation a success
    """

    TWO = 2
    """
    Two replicas must respond to consider the operation a success
    """

    THREE = 3
    """
    Three replicas must respond to consider the operation a success
    """

    QUORUM = 4
    """
    ``ceil(RF/2)`` replicas must respond to consider the operation a success
    """

    ALL = 5
    """
    All replicas must respond to consider the operation a success
    """

    LOCAL_QUORUM = 6
    """
    Requires a quorum of replicas in the local datacenter
    """

    EACH_QUORUM = 7
    """
    Requires a quorum of replicas in each datacenter
    """


ConsistencyLevel.value_to_name = {
    ConsistencyLevel.ANY: 'ANY',
    ConsistencyLevel.ONE: 'ONE',
    ConsistencyLevel.TWO: 'TWO',
    ConsistencyLevel.THREE: 'THREE',
    ConsistencyLevel.QUORUM: 'QUORUM',
    ConsistencyLevel.ALL: 'ALL',
    ConsistencyLevel.LOCAL_QUORUM: 'LOCAL_QUORUM',
    ConsistencyLevel.EACH_QUORUM: 'EACH_QUORUM',
}

ConsistencyLevel.name_to_value = dict(
    (name, value) for value, name in ConsistencyLevel.value_to_name.items())


def consistency_value_to_name(value):
    return ConsistencyLevel.value_to_name[value] if value is not None else "Not Set"


class ProtocolVersion(object):
    """
    Defines native protocol versions supported by this driver.
    """

    V1 = 1
    """
    v1, supported in Cassandra 1.2-->2.2; the frame header carries a
    one-byte signed stream id and authentication uses a CREDENTIALS message.
    """

    SUPPORTED_VERSIONS = (V1,)
    """
    A tuple of all supported protocol versions
    """

    MIN_SUPPORTED = min(SUPPORTED_VERSIONS)
    MAX_SUPPORTED = max(SUPPORTED_VERSIONS)


class DriverException(Exception):
    """
    Base for all exceptions explicitly raised by the driver.
    """
    pass


class ConnectionException(DriverException):
    """
    A transport could not be opened, the startup handshake was rejected,
    or an established transport failed while in use.
    """

    def __init__(self, message, node=None, errors=None):
        DriverException.__init__(self, message)
        self.node = node
        self.errors = errors or {}


class ConnectionTimeout(ConnectionException):
    """
    The transport timed out while waiting for a response frame.
    """
    pass


class AuthenticationFailed(ConnectionException):
    """
    Failed to authenticate.
    """
    pass


class ProtocolError(DriverException):
    """
    Communication did not match the protocol that this driver expects.
    """
    pass


class QueryException(DriverException):
    """
    The server refused to prepare a statement.
    """

    response = None
    """
    The message the server replied with instead of a prepared result.
    """

    def __init__(self, response):
        DriverException.__init__(self, "Failed to prepare statement: %s" % (response,))
        self.response = response


class CassandraException(DriverException):
    """
    The server answered a QUERY, EXECUTE or ``USE`` request with an ERROR frame.
    """

    error = None
    """
    The decoded :class:`~cqlsync.protocol.ErrorMessage`.
    """

    def __init__(self, error):
        DriverException.__init__(self, error.summary_msg())
        self.error = error

    @property
    def code(self):
        return self.error.code
