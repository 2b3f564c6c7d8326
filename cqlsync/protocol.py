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

from collections import namedtuple
import io
import logging
import socket
from uuid import UUID

from cqlsync import (ConnectionException, ConnectionTimeout, DriverException,
                     ProtocolError, CassandraException)
from cqlsync.cqltypes import (ListType, MapType, SetType, CUSTOM_TYPE_CODE,
                              lookup_casstype, lookup_type_code)
from cqlsync.marshal import (int8_unpack, int32_pack, int32_unpack, uint16_pack,
                             uint16_unpack, frame_header_pack, frame_header_unpack,
                             FRAME_HEADER_LENGTH)

log = logging.getLogger(__name__)


class NotSupportedError(DriverException):
    pass


ColumnMetadata = namedtuple("ColumnMetadata", ['keyspace_name', 'table_name', 'name', 'type'])

HEADER_DIRECTION_TO_CLIENT = 0x80
HEADER_DIRECTION_MASK = 0x80
PROTOCOL_VERSION_MASK = 0x7f

COMPRESSED_FLAG = 0x01
TRACING_FLAG = 0x02

_message_types_by_opcode = {}


def register_class(cls):
    _message_types_by_opcode[cls.opcode] = cls


class _RegisterMessageType(type):
    def __init__(cls, name, bases, dct):
        # result variants share RESULT's opcode and must not replace it
        if not name.startswith('_') and 'opcode' in dct:
            register_class(cls)


class _MessageType(object, metaclass=_RegisterMessageType):

    tracing = False
    trace_id = None
    stream_id = None

    def __repr__(self):
        return '<%s(%s)>' % (self.__class__.__name__, ', '.join('%s=%r' % i for i in _get_params(self)))


def _get_params(message_obj):
    base_attrs = dir(_MessageType)
    return (
        (n, a) for n, a in message_obj.__dict__.items()
        if n not in base_attrs and not n.startswith('_') and not callable(a)
    )


class Frame(object):
    """
    One complete wire message: the fixed eight byte header and its body.
    """

    def __init__(self, version, flags, stream, opcode, body=b''):
        self.version = version
        self.flags = flags
        self.stream = stream
        self.opcode = opcode
        self.body = body

    @property
    def length(self):
        return len(self.body)

    def to_bytes(self):
        return frame_header_pack(self.version, self.flags, self.stream,
                                 self.opcode, self.length) + self.body

    def __eq__(self, other):  # facilitates testing
        if isinstance(other, Frame):
            return (self.version == other.version and
                    self.flags == other.flags and
                    self.stream == other.stream and
                    self.opcode == other.opcode and
                    self.body == other.body)
        return NotImplemented

    def __str__(self):
        return "ver({0}); flags({1:04b}); stream({2}); op({3}); len({4})".format(
            self.version, self.flags, self.stream, self.opcode, self.length)
    __repr__ = __str__


error_classes = {}


class ErrorMessage(_MessageType, Exception):
    opcode = 0x00
    name = 'ERROR'
    summary = 'Unknown'

    def __init__(self, code, message, info):
        self.code = code
        self.message = message
        self.info = info

    @classmethod
    def recv_body(cls, f, protocol_version):
        code = read_int(f)
        msg = read_string(f)
        subcls = error_classes.get(code, cls)
        extra_info = subcls.recv_error_info(f, protocol_version)
        return subcls(code=code, message=msg, info=extra_info)

    def summary_msg(self):
        return 'Error from server: code=%04x [%s] message="%s"' \
               % (self.code, self.summary, self.message)

    def __str__(self):
        return '<%s>' % self.summary_msg()
    __repr__ = __str__

    @staticmethod
    def recv_error_info(f, protocol_version):
        pass

    def to_exception(self):
        return CassandraException(self)


class ErrorMessageSubclass(_RegisterMessageType):
    def __init__(cls, name, bases, dct):
        if cls.error_code is not None:  # Server has an error code of 0.
            error_classes[cls.error_code] = cls


class ErrorMessageSub(ErrorMessage, metaclass=ErrorMessageSubclass):
    error_code = None


class RequestExecutionException(ErrorMessageSub):
    pass


class RequestValidationException(ErrorMessageSub):
    pass


class ServerError(ErrorMessageSub):
    summary = 'Server error'
    error_code = 0x0000


class ProtocolException(ErrorMessageSub):
    summary = 'Protocol error'
    error_code = 0x000A


class BadCredentials(ErrorMessageSub):
    summary = 'Bad credentials'
    error_code = 0x0100


class UnavailableErrorMessage(RequestExecutionException):
    summary = 'Unavailable exception'
    error_code = 0x1000

    @staticmethod
    def recv_error_info(f, protocol_version):
        return {
            'consistency': read_consistency_level(f),
            'required_replicas': read_int(f),
            'alive_replicas': read_int(f),
        }


class OverloadedErrorMessage(RequestExecutionException):
    summary = 'Coordinator node overloaded'
    error_code = 0x1001


class IsBootstrappingErrorMessage(RequestExecutionException):
    summary = 'Coordinator node is bootstrapping'
    error_code = 0x1002


class TruncateError(RequestExecutionException):
    summary = 'Error during truncate'
    error_code = 0x1003


class WriteTimeoutErrorMessage(RequestExecutionException):
    summary = "Coordinator node timed out waiting for replica nodes' responses"
    error_code = 0x1100

    @staticmethod
    def recv_error_info(f, protocol_version):
        return {
            'consistency': read_consistency_level(f),
            'received_responses': read_int(f),
            'required_responses': read_int(f),
            'write_type': read_string(f),
        }


class ReadTimeoutErrorMessage(RequestExecutionException):
    summary = "Coordinator node timed out waiting for replica nodes' responses"
    error_code = 0x1200

    @staticmethod
    def recv_error_info(f, protocol_version):
        return {
            'consistency': read_consistency_level(f),
            'received_responses': read_int(f),
            'required_responses': read_int(f),
            'data_retrieved': bool(read_byte(f)),
        }


class SyntaxException(RequestValidationException):
    summary = 'Syntax error in CQL query'
    error_code = 0x2000


class UnauthorizedErrorMessage(RequestValidationException):
    summary = 'Unauthorized'
    error_code = 0x2100


class InvalidRequestException(RequestValidationException):
    summary = 'Invalid query'
    error_code = 0x2200


class ConfigurationException(RequestValidationException):
    summary = 'Query invalid because of configuration issue'
    error_code = 0x2300


class AlreadyExistsException(ConfigurationException):
    summary = 'Item already exists'
    error_code = 0x2400

    @staticmethod
    def recv_error_info(f, protocol_version):
        return {
            'keyspace': read_string(f),
            'table': read_string(f),
        }


class PreparedQueryNotFound(RequestValidationException):
    summary = 'Matching prepared statement not found on this node'
    error_code = 0x2500

    @staticmethod
    def recv_error_info(f, protocol_version):
        # return the query ID
        return read_binary_string(f)


class StartupMessage(_MessageType):
    opcode = 0x01
    name = 'STARTUP'

    def __init__(self, cqlversion, options):
        self.cqlversion = cqlversion
        self.options = options

    def send_body(self, f, protocol_version):
        optmap = dict(self.options)
        optmap['CQL_VERSION'] = self.cqlversion
        write_stringmap(f, optmap)


class ReadyMessage(_MessageType):
    opcode = 0x02
    name = 'READY'

    @classmethod
    def recv_body(cls, *args):
        return cls()


class AuthenticateMessage(_MessageType):
    opcode = 0x03
    name = 'AUTHENTICATE'

    def __init__(self, authenticator):
        self.authenticator = authenticator

    @classmethod
    def recv_body(cls, f, *args):
        authname = read_string(f)
        return cls(authenticator=authname)


class CredentialsMessage(_MessageType):
    opcode = 0x04
    name = 'CREDENTIALS'

    def __init__(self, creds):
        self.creds = creds

    def send_body(self, f, protocol_version):
        write_stringmap(f, self.creds)

    def __repr__(self):
        return '<%s(creds=%r)>' % (self.__class__.__name__, sorted(self.creds))


class QueryMessage(_MessageType):
    opcode = 0x07
    name = 'QUERY'

    def __init__(self, query, consistency_level):
        self.query = query
        self.consistency_level = consistency_level

    def send_body(self, f, protocol_version):
        write_longstring(f, self.query)
        write_consistency_level(f, self.consistency_level)


class PrepareMessage(_MessageType):
    opcode = 0x09
    name = 'PREPARE'

    def __init__(self, query):
        self.query = query

    def send_body(self, f, protocol_version):
        write_longstring(f, self.query)


class ExecuteMessage(_MessageType):
    opcode = 0x0A
    name = 'EXECUTE'

    def __init__(self, query_id, query_params, consistency_level):
        self.query_id = query_id
        self.query_params = query_params
        self.consistency_level = consistency_level

    def send_body(self, f, protocol_version):
        write_string(f, self.query_id)
        write_short(f, len(self.query_params))
        for param in self.query_params:
            write_value(f, param)
        write_consistency_level(f, self.consistency_level)


RESULT_KIND_VOID = 0x0001
RESULT_KIND_ROWS = 0x0002
RESULT_KIND_SET_KEYSPACE = 0x0003
RESULT_KIND_PREPARED = 0x0004
RESULT_KIND_SCHEMA_CHANGE = 0x0005

_result_kinds = {}


class ResultMessage(_MessageType):
    """
    A RESULT frame.  Decoding yields one of the kind-specific subclasses:
    :class:`VoidResultMessage`, :class:`RowsResultMessage`,
    :class:`SetKeyspaceResultMessage`, :class:`PreparedResultMessage` or
    :class:`SchemaChangeResultMessage`.
    """
    opcode = 0x08
    name = 'RESULT'

    kind = None

    _FLAGS_GLOBAL_TABLES_SPEC = 0x0001

    @classmethod
    def recv_body(cls, f, protocol_version):
        kind = read_int(f)
        try:
            result_class = _result_kinds[kind]
        except KeyError:
            raise DriverException("Unknown RESULT kind: %d" % kind)
        return result_class.recv_result(f, protocol_version)

    @classmethod
    def recv_result(cls, f, protocol_version):
        raise NotImplementedError()

    @classmethod
    def recv_metadata(cls, f):
        flags = read_int(f)
        colcount = read_int(f)

        glob_tblspec = bool(flags & cls._FLAGS_GLOBAL_TABLES_SPEC)
        if glob_tblspec:
            ksname = read_string(f)
            cfname = read_string(f)
        column_metadata = []
        for _ in range(colcount):
            if glob_tblspec:
                colksname = ksname
                colcfname = cfname
            else:
                colksname = read_string(f)
                colcfname = read_string(f)
            colname = read_string(f)
            coltype = cls.read_type(f)
            column_metadata.append(ColumnMetadata(colksname, colcfname, colname, coltype))
        return column_metadata

    @classmethod
    def read_type(cls, f):
        optid = read_short(f)
        if optid == CUSTOM_TYPE_CODE:
            return lookup_casstype(read_string(f))
        try:
            typeclass = lookup_type_code(optid)
        except KeyError:
            raise NotSupportedError("Unknown data type code 0x%04x. Have to skip"
                                    " entire result set." % (optid,))
        if typeclass in (ListType, SetType):
            subtype = cls.read_type(f)
            typeclass = typeclass.apply_parameters((subtype,))
        elif typeclass == MapType:
            keysubtype = cls.read_type(f)
            valsubtype = cls.read_type(f)
            typeclass = typeclass.apply_parameters((keysubtype, valsubtype))
        return typeclass


def _register_result_kind(cls):
    _result_kinds[cls.kind] = cls
    return cls


@_register_result_kind
class VoidResultMessage(ResultMessage):
    kind = RESULT_KIND_VOID

    @classmethod
    def recv_result(cls, f, protocol_version):
        return cls()


@_register_result_kind
class RowsResultMessage(ResultMessage):
    kind = RESULT_KIND_ROWS

    def __init__(self, column_metadata, parsed_rows):
        self.column_metadata = column_metadata
        self.column_names = [c.name for c in column_metadata]
        self.column_types = [c.type for c in column_metadata]
        self.parsed_rows = parsed_rows

    @classmethod
    def recv_result(cls, f, protocol_version):
        column_metadata = cls.recv_metadata(f)
        rowcount = read_int(f)
        rows = [cls.recv_row(f, len(column_metadata)) for _ in range(rowcount)]

        def decode_val(val, col_md):
            try:
                return col_md.type.from_binary(val, protocol_version)
            except Exception as e:
                raise DriverException('Failed decoding result column "%s" of type %s: %s'
                                      % (col_md.name, col_md.type.cql_parameterized_type(), e))

        parsed_rows = [tuple(decode_val(val, col_md) for val, col_md in zip(row, column_metadata))
                       for row in rows]
        return cls(column_metadata, parsed_rows)

    @staticmethod
    def recv_row(f, colcount):
        return [read_value(f) for _ in range(colcount)]


@_register_result_kind
class SetKeyspaceResultMessage(ResultMessage):
    kind = RESULT_KIND_SET_KEYSPACE

    def __init__(self, new_keyspace):
        self.new_keyspace = new_keyspace

    @classmethod
    def recv_result(cls, f, protocol_version):
        return cls(read_string(f))


@_register_result_kind
class PreparedResultMessage(ResultMessage):
    kind = RESULT_KIND_PREPARED

    def __init__(self, query_id, bind_metadata):
        self.query_id = query_id
        self.bind_metadata = bind_metadata

    @classmethod
    def recv_result(cls, f, protocol_version):
        query_id = read_binary_string(f)
        return cls(query_id, cls.recv_metadata(f))


@_register_result_kind
class SchemaChangeResultMessage(ResultMessage):
    kind = RESULT_KIND_SCHEMA_CHANGE

    def __init__(self, schema_change_event):
        self.schema_change_event = schema_change_event

    @classmethod
    def recv_result(cls, f, protocol_version):
        change_type = read_string(f)
        keyspace = read_string(f)
        table = read_string(f)
        return cls({'change_type': change_type, 'keyspace': keyspace, 'table': table})


class ProtocolHandler(object):
    """
    ProtocolHandler handles encoding and decoding messages.

    Contracted class methods are :meth:`ProtocolHandler.encode_message` and
    :meth:`ProtocolHandler.decode_message`.
    """

    message_types_by_opcode = _message_types_by_opcode.copy()
    """
    Mapping of opcode to Message implementation, used by ``decode_message``
    to instantiate a message and populate it using ``recv_body``.
    """

    @classmethod
    def encode_message(cls, msg, stream_id, protocol_version):
        """
        Encodes a message into a complete frame.

        :param msg: the message, a request type from this module
        :param stream_id: protocol stream id for the frame header
        :param protocol_version: version for the frame header, and used encoding contents
        """
        flags = 0
        body = io.BytesIO()
        msg.send_body(body, protocol_version)

        if msg.tracing:
            flags |= TRACING_FLAG

        return Frame(protocol_version, flags, stream_id, msg.opcode, body.getvalue()).to_bytes()

    @classmethod
    def decode_message(cls, protocol_version, stream_id, flags, opcode, body):
        """
        Decodes a native protocol message body

        :param protocol_version: version to use decoding contents
        :param stream_id: native protocol stream id from the frame header
        :param flags: native protocol flags bitmap from the header
        :param opcode: native protocol opcode from the header
        :param body: frame body
        :return: a message decoded from the body and frame attributes
        """
        if flags & COMPRESSED_FLAG:
            raise ProtocolError("Received a compressed frame, but compression was not negotiated")

        body = io.BytesIO(body)
        if flags & TRACING_FLAG:
            trace_id = UUID(bytes=body.read(16))
            flags ^= TRACING_FLAG
        else:
            trace_id = None

        if flags:
            log.warning("Unknown protocol flags set: %02x. May cause problems.", flags)

        try:
            msg_class = cls.message_types_by_opcode[opcode]
        except KeyError:
            raise ProtocolError("Unknown opcode in response frame: 0x%02x" % (opcode,))
        msg = msg_class.recv_body(body, protocol_version)
        msg.stream_id = stream_id
        msg.trace_id = trace_id
        return msg


def _read_exactly(transport, length):
    """
    Reads exactly ``length`` bytes from ``transport``, accumulating short reads.
    """
    buf = bytearray()
    while len(buf) < length:
        try:
            chunk = transport.recv(length - len(buf))
        except socket.timeout as exc:
            raise ConnectionTimeout("Connection timed out: %s" % (exc,))
        except OSError as exc:
            raise ConnectionException("Error reading from connection: %s" % (exc,))
        if not chunk:
            raise ConnectionException("Connection closed by server after reading %d of %d bytes"
                                      % (len(buf), length))
        buf.extend(chunk)
    return bytes(buf)


def read_frame(transport):
    """
    Reads one complete :class:`Frame` from a blocking transport exposing
    ``recv(bufsize)``.
    """
    header = _read_exactly(transport, FRAME_HEADER_LENGTH)
    version, flags, stream, opcode, length = frame_header_unpack(header)
    body = _read_exactly(transport, length) if length else b''
    return Frame(version, flags, stream, opcode, body)


def read_byte(f):
    return int8_unpack(f.read(1))


def read_int(f):
    return int32_unpack(f.read(4))


def write_int(f, i):
    f.write(int32_pack(i))


def read_short(f):
    return uint16_unpack(f.read(2))


def write_short(f, s):
    f.write(uint16_pack(s))


def read_consistency_level(f):
    return read_short(f)


def write_consistency_level(f, cl):
    write_short(f, cl)


def read_string(f):
    size = read_short(f)
    contents = f.read(size)
    return contents.decode('utf8')


def read_binary_string(f):
    size = read_short(f)
    contents = f.read(size)
    return contents


def write_string(f, s):
    if isinstance(s, str):
        s = s.encode('utf8')
    write_short(f, len(s))
    f.write(s)


def read_binary_longstring(f):
    size = read_int(f)
    contents = f.read(size)
    return contents


def read_longstring(f):
    return read_binary_longstring(f).decode('utf8')


def write_longstring(f, s):
    if isinstance(s, str):
        s = s.encode('utf8')
    write_int(f, len(s))
    f.write(s)


def read_stringmap(f):
    numpairs = read_short(f)
    strmap = {}
    for _ in range(numpairs):
        k = read_string(f)
        strmap[k] = read_string(f)
    return strmap


def write_stringmap(f, strmap):
    write_short(f, len(strmap))
    for k, v in strmap.items():
        write_string(f, k)
        write_string(f, v)


def read_value(f):
    size = read_int(f)
    if size < 0:
        return None
    return f.read(size)


def write_value(f, v):
    if v is None:
        write_int(f, -1)
    else:
        write_int(f, len(v))
        f.write(v)
