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
The flat set of configured nodes a :class:`~cqlsync.connection.Connection`
chooses from.
"""

from collections.abc import Mapping
from functools import total_ordering
import random


DEFAULT_PORT = 9042


@total_ordering
class Node(object):
    """
    An immutable description of one reachable Cassandra node: its address,
    the credentials to answer an AUTHENTICATE challenge with, and the socket
    options used when a transport is opened to it.
    """

    def __init__(self, host, port=DEFAULT_PORT, username=None, password=None,
                 connect_timeout=5.0, timeout=None, sockopts=None):
        if not host:
            raise ValueError("Node host must be a non-empty string")
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ValueError("Invalid port for node %s: %r" % (host, port))
        if not 0 < port < 65536:
            raise ValueError("Invalid port for node %s: %r" % (host, port))
        if (username is None) != (password is None):
            raise ValueError("Node %s: username and password must be given together" % (host,))

        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._connect_timeout = connect_timeout
        self._timeout = timeout
        self._sockopts = tuple(tuple(opt) for opt in (sockopts or ()))

    @classmethod
    def from_config(cls, entry):
        """
        Builds a node from one entry of the configured node list.  An entry is
        either a ``"host"`` or ``"host:port"`` string, a mapping of
        constructor arguments, or an existing :class:`Node`.
        """
        if isinstance(entry, Node):
            return entry
        if isinstance(entry, Mapping):
            return cls(**entry)
        if isinstance(entry, str):
            host, sep, port = entry.rpartition(':')
            # bare IPv6 addresses contain colons but no port
            if not sep or ']' in port or (':' in host and not host.endswith(']')):
                return cls(entry)
            return cls(host.strip('[]'), port)
        raise TypeError("Cannot build a Node from %r" % (entry,))

    @property
    def host(self):
        return self._host

    @property
    def port(self):
        return self._port

    @property
    def address(self):
        return self._host, self._port

    @property
    def username(self):
        return self._username

    @property
    def password(self):
        return self._password

    @property
    def has_credentials(self):
        return self._username is not None

    @property
    def credentials(self):
        """
        The credentials map sent in a CREDENTIALS message.
        """
        return {'username': self._username, 'password': self._password}

    @property
    def connect_timeout(self):
        """
        Seconds allowed for opening the transport.
        """
        return self._connect_timeout

    @property
    def timeout(self):
        """
        Seconds a blocking read may stall before the connection reports a
        timeout.  :const:`None` blocks indefinitely.
        """
        return self._timeout

    @property
    def sockopts(self):
        return self._sockopts

    def __eq__(self, other):
        return isinstance(other, Node) and self.address == other.address

    def __hash__(self):
        return hash(self.address)

    def __lt__(self, other):
        return self.address < other.address

    def __str__(self):
        return "%s:%d" % (self._host, self._port)

    def __repr__(self):
        return "<%s: %s:%d>" % (self.__class__.__name__, self._host, self._port)


class Cluster(object):
    """
    Holds the configured nodes.  There is no health tracking or preference
    ordering; every connection attempt draws uniformly at random.
    """

    def __init__(self, nodes):
        if isinstance(nodes, (str, Mapping, Node)):
            nodes = [nodes]
        self._nodes = tuple(Node.from_config(n) for n in nodes)
        if not self._nodes:
            raise ValueError("At least one node must be configured")

    @property
    def nodes(self):
        return self._nodes

    def get_random_node(self, exclude=()):
        """
        Returns a node chosen uniformly at random among those not in
        `exclude`, or :const:`None` when every node is excluded.
        """
        candidates = [n for n in self._nodes if n not in exclude]
        if not candidates:
            return None
        return random.choice(candidates)

    def __len__(self):
        return len(self._nodes)

    def __repr__(self):
        return "<%s: %s>" % (self.__class__.__name__, ', '.join(str(n) for n in self._nodes))
