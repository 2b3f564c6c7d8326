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

from io import BytesIO

from cqlsync.marshal import frame_header_unpack, FRAME_HEADER_LENGTH
from cqlsync.protocol import (AuthenticateMessage, ErrorMessage, Frame, ReadyMessage,
                              ResultMessage, RESULT_KIND_PREPARED, RESULT_KIND_ROWS,
                              RESULT_KIND_SCHEMA_CHANGE, RESULT_KIND_SET_KEYSPACE,
                              RESULT_KIND_VOID, read_binary_string, read_longstring,
                              read_short, read_stringmap, read_value, write_int,
                              write_short, write_string, write_value)

RESPONSE_VERSION = 0x81


class MockTransport(object):
    """
    Stands in for a connected socket.  Each ``sendall`` queues the next
    scripted response; ``recv`` hands it back at most `chunk_size` bytes at
    a time.  A scripted response that is an exception is raised from
    ``recv`` instead.
    """

    def __init__(self, responses=(), chunk_size=None):
        self.responses = list(responses)
        self.chunk_size = chunk_size
        self.sent = []
        self.timeout = None
        self.sockopts = []
        self.closed = False
        self._buffer = b''
        self._error = None

    def feed(self, data):
        self._buffer += data

    def sendall(self, data):
        self.sent.append(data)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                self._error = response
            else:
                self._buffer += response

    def recv(self, bufsize):
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        size = bufsize if self.chunk_size is None else min(bufsize, self.chunk_size)
        chunk, self._buffer = self._buffer[:size], self._buffer[size:]
        return chunk

    def settimeout(self, timeout):
        self.timeout = timeout

    def setsockopt(self, *args):
        self.sockopts.append(args)

    def shutdown(self, how):
        pass

    def close(self):
        self.closed = True

    def requests(self):
        return [decode_request(data) for data in self.sent]


class MockTransportFactory(object):
    """
    A ``transport_factory`` handing out one :class:`MockTransport` per
    connection attempt.  Addresses listed in `refuse` fail to connect.
    """

    def __init__(self, responses=(), refuse=(), chunk_size=None):
        self.responses = list(responses)
        self.refuse = set(refuse)
        self.chunk_size = chunk_size
        self.attempts = []
        self.transports = []

    def __call__(self, address, timeout=None):
        self.attempts.append(address)
        if address in self.refuse:
            raise ConnectionRefusedError(111, "Connection refused")
        transport = MockTransport(self.responses, self.chunk_size)
        self.transports.append(transport)
        return transport

    @property
    def transport(self):
        return self.transports[-1]


class Request(object):

    def __init__(self, version, flags, stream, opcode, body):
        self.version = version
        self.flags = flags
        self.stream = stream
        self.opcode = opcode
        self.body = body

    def reader(self):
        return BytesIO(self.body)


def decode_request(data):
    version, flags, stream, opcode, length = frame_header_unpack(data[:FRAME_HEADER_LENGTH])
    body = data[FRAME_HEADER_LENGTH:]
    assert len(body) == length
    return Request(version, flags, stream, opcode, body)


def read_query_request(request):
    f = request.reader()
    return read_longstring(f), read_short(f)


def read_execute_request(request):
    f = request.reader()
    query_id = read_binary_string(f)
    values = [read_value(f) for _ in range(read_short(f))]
    return query_id, values, read_short(f)


def read_credentials_request(request):
    return read_stringmap(request.reader())


def make_response(opcode, body=b'', version=RESPONSE_VERSION, flags=0, stream=0):
    return Frame(version, flags, stream, opcode, body).to_bytes()


def ready_response():
    return make_response(ReadyMessage.opcode)


def authenticate_response(authenticator='org.apache.cassandra.auth.PasswordAuthenticator'):
    buf = BytesIO()
    write_string(buf, authenticator)
    return make_response(AuthenticateMessage.opcode, buf.getvalue())


def error_response(code=0x2200, message='Invalid query'):
    buf = BytesIO()
    write_int(buf, code)
    write_string(buf, message)
    return make_response(ErrorMessage.opcode, buf.getvalue())


def void_response():
    buf = BytesIO()
    write_int(buf, RESULT_KIND_VOID)
    return make_response(ResultMessage.opcode, buf.getvalue())


def set_keyspace_response(keyspace):
    buf = BytesIO()
    write_int(buf, RESULT_KIND_SET_KEYSPACE)
    write_string(buf, keyspace)
    return make_response(ResultMessage.opcode, buf.getvalue())


def schema_change_response(change_type, keyspace, table=''):
    buf = BytesIO()
    write_int(buf, RESULT_KIND_SCHEMA_CHANGE)
    write_string(buf, change_type)
    write_string(buf, keyspace)
    write_string(buf, table)
    return make_response(ResultMessage.opcode, buf.getvalue())


def _write_metadata(buf, columns, keyspace='ks', table='tbl'):
    write_int(buf, 0x0001)  # global table spec
    write_int(buf, len(columns))
    write_string(buf, keyspace)
    write_string(buf, table)
    for name, type_code in columns:
        write_string(buf, name)
        write_short(buf, type_code)


def prepared_response(query_id, columns):
    """
    `columns` is a sequence of ``(marker name, type code)`` pairs.
    """
    buf = BytesIO()
    write_int(buf, RESULT_KIND_PREPARED)
    write_short(buf, len(query_id))
    buf.write(query_id)
    _write_metadata(buf, columns)
    return make_response(ResultMessage.opcode, buf.getvalue())


def rows_response(columns, rows):
    """
    `rows` holds already serialized cell values.
    """
    buf = BytesIO()
    write_int(buf, RESULT_KIND_ROWS)
    _write_metadata(buf, columns)
    write_int(buf, len(rows))
    for row in rows:
        for cell in row:
            write_value(buf, cell)
    return make_response(ResultMessage.opcode, buf.getvalue())
