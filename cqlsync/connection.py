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
import socket

from cqlsync import (AuthenticationFailed, ConnectionException, ConnectionTimeout,
                     ProtocolError, ProtocolVersion)
from cqlsync.protocol import (AuthenticateMessage, CredentialsMessage, ErrorMessage,
                              ProtocolHandler, StartupMessage, read_frame,
                              HEADER_DIRECTION_MASK, HEADER_DIRECTION_TO_CLIENT,
                              PROTOCOL_VERSION_MASK)

log = logging.getLogger(__name__)

DEFAULT_CQL_VERSION = '3.0.0'

# a single request is in flight at any time, so every frame uses this stream
REQUEST_STREAM_ID = 0


class Connection(object):
    """
    A blocking connection to one node of a :class:`~cqlsync.cluster.Cluster`.

    The connection owns at most one transport.  Requests are strictly
    sequential: :meth:`send_msg` writes a frame and blocks until the matching
    response frame has been read.  Instances must not be shared between
    threads without external locking.
    """

    protocol_version = ProtocolVersion.V1

    node = None
    """
    The :class:`~cqlsync.cluster.Node` the transport is bound to, if any.
    """

    is_ready = False
    """
    Whether the startup handshake completed on the current transport.
    """

    _socket = None

    def __init__(self, cluster, protocol_version=ProtocolVersion.V1,
                 transport_factory=socket.create_connection):
        if protocol_version not in ProtocolVersion.SUPPORTED_VERSIONS:
            raise ValueError("Unsupported protocol version: %r" % (protocol_version,))
        self.cluster = cluster
        self.protocol_version = protocol_version
        self.transport_factory = transport_factory

    @property
    def is_connected(self):
        return self._socket is not None

    def connect(self):
        """
        Binds this connection to a randomly selected node.  Every configured
        node is tried at most once; if none accepts a transport a
        :exc:`~cqlsync.ConnectionException` listing each node's error is raised.
        """
        if self._socket is not None:
            return True

        tried = set()
        errors = {}
        while True:
            node = self.cluster.get_random_node(exclude=tried)
            if node is None:
                raise ConnectionException(
                    "Unable to connect to any node, tried: %s" %
                    (', '.join('%s (%s)' % (n, e) for n, e in errors.items()),),
                    errors=errors)
            tried.add(node)

            log.debug("Opening connection to %s", node)
            try:
                self._socket = self._open_transport(node)
            except (OSError, ConnectionException) as exc:
                log.debug("Failed to connect to %s: %s", node, exc)
                errors[node] = exc
                continue

            self.node = node
            self.is_ready = False
            log.debug("Connected to %s", node)
            return True

    def _open_transport(self, node):
        sock = self.transport_factory(node.address, node.connect_timeout)
        try:
            sock.settimeout(node.timeout)
            for args in node.sockopts:
                sock.setsockopt(*args)
        except OSError:
            sock.close()
            raise
        return sock

    def startup(self, cql_version=DEFAULT_CQL_VERSION, options=None):
        """
        Performs the STARTUP exchange, answering an AUTHENTICATE challenge with
        the bound node's credentials.  On failure the transport is closed and
        :exc:`~cqlsync.ConnectionException` (or its subclass
        :exc:`~cqlsync.AuthenticationFailed`) is raised.
        """
        if self._socket is None:
            raise ConnectionException("Cannot start up a connection that is not connected")

        log.debug("Sending StartupMessage on %s", self)
        response = self.send_msg(StartupMessage(cqlversion=cql_version, options=options or {}))

        if isinstance(response, ErrorMessage):
            log.debug("Received ErrorMessage on new connection to %s: %s",
                      self.node, response.summary_msg())
            raise self._handshake_failed(ConnectionException(
                "Failed to initialize new connection to %s: %s" % (self.node, response.summary_msg()),
                node=self.node))

        if isinstance(response, AuthenticateMessage):
            log.debug("Got AuthenticateMessage on new connection to %s: %s",
                      self.node, response.authenticator)
            if not self.node.has_credentials:
                raise self._handshake_failed(AuthenticationFailed(
                    "Remote end %s requires authentication" % (self.node,), node=self.node))

            log.debug("Sending credentials-based auth response on %s", self)
            response = self.send_msg(CredentialsMessage(creds=self.node.credentials))
            if isinstance(response, ErrorMessage):
                raise self._handshake_failed(AuthenticationFailed(
                    "Failed to authenticate to %s: %s" % (self.node, response.summary_msg()),
                    node=self.node))

        log.debug("Connection to %s is ready (%r)", self.node, response)
        self.is_ready = True
        return True

    def _handshake_failed(self, exc):
        self.disconnect()
        return exc

    def send_msg(self, msg):
        """
        Sends `msg` and blocks until its response has been read and decoded.
        Returns the decoded response message.  Transport failures close the
        connection before the error propagates.
        """
        if self._socket is None:
            raise ConnectionException("Connection is not connected")

        data = ProtocolHandler.encode_message(msg, REQUEST_STREAM_ID, self.protocol_version)
        try:
            self._socket.sendall(data)
        except socket.timeout as exc:
            raise self._defunct(ConnectionTimeout("Timed out sending %s to %s: %s"
                                                  % (msg.name, self.node, exc), node=self.node))
        except OSError as exc:
            raise self._defunct(ConnectionException("Error sending %s to %s: %s"
                                                    % (msg.name, self.node, exc), node=self.node))

        try:
            frame = read_frame(self._socket)
        except ConnectionException as exc:
            exc.node = self.node
            raise self._defunct(exc)

        return self._decode_frame(frame)

    def _decode_frame(self, frame):
        if (frame.version & HEADER_DIRECTION_MASK) != HEADER_DIRECTION_TO_CLIENT:
            raise self._defunct(ProtocolError("Received a request frame from %s: %s" % (self.node, frame)))
        version = frame.version & PROTOCOL_VERSION_MASK
        if version != self.protocol_version:
            raise self._defunct(ProtocolError("Unexpected protocol version %d from %s (expected %d)"
                                              % (version, self.node, self.protocol_version)))
        if frame.stream != REQUEST_STREAM_ID:
            raise self._defunct(ProtocolError("Unexpected stream id %d from %s" % (frame.stream, self.node)))

        try:
            return ProtocolHandler.decode_message(version, frame.stream, frame.flags,
                                                  frame.opcode, frame.body)
        except Exception as exc:
            log.exception("Error decoding response from %s: %s", self.node, frame)
            raise self._defunct(exc)

    def _defunct(self, exc):
        log.debug("Defuncting connection to %s: %s", self.node, exc)
        self.disconnect()
        return exc

    def disconnect(self):
        """
        Closes the transport if one is held.  Safe to call repeatedly.
        """
        sock = self._socket
        if sock is None:
            return True

        log.debug("Closing connection to %s", self.node)
        self._socket = None
        self.is_ready = False
        self.node = None
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            log.debug("Error shutting down socket: %s", exc)
        sock.close()
        return True

    def __str__(self):
        status = "ready" if self.is_ready else ("connected" if self.is_connected else "closed")
        return "<%s(%r) %s, %s>" % (self.__class__.__name__, id(self), self.node, status)
    __repr__ = __str__
