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
Representation of CQL column types and their native-protocol serialization.

Each type class exposes ``serialize(val, protocol_version)`` and
``deserialize(byts, protocol_version)``.  Parameterized types (list, set,
map) are specialized with :meth:`_CassandraType.apply_parameters` when a
result or prepared metadata block names their element types.
"""

import calendar
import datetime
from decimal import Decimal
import io
import ipaddress
import logging
import socket
from uuid import UUID

from cqlsync.marshal import (int8_pack, int8_unpack, int32_pack, int32_unpack,
                             int64_pack, int64_unpack, uint16_pack, uint16_unpack,
                             float_pack, float_unpack, double_pack, double_unpack,
                             varint_pack, varint_unpack)

log = logging.getLogger(__name__)

apache_cassandra_type_prefix = 'org.apache.cassandra.db.marshal.'

_number_types = frozenset((int, float))

_casstypes = {}


class CassandraTypeType(type):
    """
    The CassandraType objects in this module will normally be used directly,
    rather than through instances of those types. They can be instantiated,
    of course, but the type information is what this driver mainly needs.

    This metaclass registers CassandraType classes by their Cassandra-side
    class name so custom types named in metadata can be looked up.
    """

    def __new__(metacls, name, bases, dct):
        dct.setdefault('cassname', name)
        cls = type.__new__(metacls, name, bases, dct)
        if not name.startswith('_'):
            _casstypes[name] = cls
        return cls


def lookup_casstype(casstype):
    """
    Given a Cassandra type name, either fully- or partially-qualified, return
    the matching type class.  Unknown names produce an unrecognized type that
    passes values through as raw bytes.
    """
    shortname = casstype
    if shortname.startswith(apache_cassandra_type_prefix):
        shortname = shortname[len(apache_cassandra_type_prefix):]
    try:
        return _casstypes[shortname]
    except KeyError:
        log.debug("Unknown custom type %s, values will be returned as bytes", casstype)
        return mkUnrecognizedType(casstype)


class EmptyValue(object):
    """ See _CassandraType.support_empty_values """

    def __str__(self):
        return "EMPTY"
    __repr__ = __str__

EMPTY = EmptyValue()


class _CassandraType(object, metaclass=CassandraTypeType):
    subtypes = ()
    num_subtypes = 0
    empty_binary_ok = False

    support_empty_values = False
    """
    An empty string value in a non-string column is returned as None.
    Set this to :const:`True` to get the EMPTY singleton instead.
    """

    @classmethod
    def from_binary(cls, byts, protocol_version):
        """
        Deserialize a bytestring into a value. See the deserialize() method
        for more information. This method differs in that if None or the empty
        string is passed in, None may be returned.
        """
        if byts is None:
            return None
        elif len(byts) == 0 and not cls.empty_binary_ok:
            return EMPTY if cls.support_empty_values else None
        return cls.deserialize(byts, protocol_version)

    @classmethod
    def to_binary(cls, val, protocol_version):
        """
        Serialize a value into a bytestring. See the serialize() method for
        more information. This method differs in that if None is passed in,
        the result is the empty string.
        """
        return b'' if val is None else cls.serialize(val, protocol_version)

    @staticmethod
    def deserialize(byts, protocol_version):
        return byts

    @staticmethod
    def serialize(val, protocol_version):
        return val

    @classmethod
    def apply_parameters(cls, subtypes):
        """
        Given a set of other CassandraTypes, create a new subtype of this type
        using them as parameters.

            >>> MapType.apply_parameters([DateType, BooleanType])
            <class 'cqlsync.cqltypes.MapType(DateType, BooleanType)'>
        """
        if cls.num_subtypes != 'UNKNOWN' and len(subtypes) != cls.num_subtypes:
            raise ValueError("%s types require %d subtypes (%d given)"
                             % (cls.typename, cls.num_subtypes, len(subtypes)))
        newname = '%s(%s)' % (cls.cassname, ', '.join(s.cassname for s in subtypes))
        return type(newname, (cls,), {'subtypes': tuple(subtypes), 'cassname': cls.cassname})

    @classmethod
    def cql_parameterized_type(cls):
        """
        Return a CQL type specifier for this type. If this type has parameters,
        they are included in standard CQL <> notation.
        """
        if not cls.subtypes:
            return cls.typename
        return '%s<%s>' % (cls.typename, ', '.join(styp.cql_parameterized_type() for styp in cls.subtypes))


# it's initially named with a _ to avoid registering it as a real type, but
# client programs may want to use the name still for isinstance(), etc
CassandraType = _CassandraType


class _UnrecognizedType(_CassandraType):
    num_subtypes = 'UNKNOWN'
    empty_binary_ok = True

    @staticmethod
    def serialize(val, protocol_version):
        return bytes(val)


def mkUnrecognizedType(casstypename):
    return CassandraTypeType('_' + casstypename,
                             (_UnrecognizedType,),
                             {'typename': "'%s'" % casstypename, 'cassname': casstypename})


class BytesType(_CassandraType):
    typename = 'blob'
    empty_binary_ok = True

    @staticmethod
    def serialize(val, protocol_version):
        return bytes(val)


class DecimalType(_CassandraType):
    typename = 'decimal'

    @staticmethod
    def deserialize(byts, protocol_version):
        scale = int32_unpack(byts[:4])
        unscaled = varint_unpack(byts[4:])
        return Decimal('%de%d' % (unscaled, -scale))

    @staticmethod
    def serialize(dec, protocol_version):
        try:
            sign, digits, exponent = dec.as_tuple()
        except AttributeError:
            try:
                sign, digits, exponent = Decimal(dec).as_tuple()
            except Exception:
                raise TypeError("Invalid type for Decimal value: %r" % (dec,))
        unscaled = int(''.join([str(digit) for digit in digits]))
        if sign:
            unscaled *= -1
        return int32_pack(-exponent) + varint_pack(unscaled)


class UUIDType(_CassandraType):
    typename = 'uuid'

    @staticmethod
    def deserialize(byts, protocol_version):
        return UUID(bytes=byts)

    @staticmethod
    def serialize(uuid, protocol_version):
        try:
            return uuid.bytes
        except AttributeError:
            raise TypeError("Got a non-UUID object for a UUID value")


class TimeUUIDType(UUIDType):
    typename = 'timeuuid'


class BooleanType(_CassandraType):
    typename = 'boolean'

    @staticmethod
    def deserialize(byts, protocol_version):
        return bool(int8_unpack(byts))

    @staticmethod
    def serialize(truth, protocol_version):
        return int8_pack(truth)


class AsciiType(_CassandraType):
    typename = 'ascii'
    empty_binary_ok = True

    @staticmethod
    def deserialize(byts, protocol_version):
        return byts.decode('ascii')

    @staticmethod
    def serialize(var, protocol_version):
        if isinstance(var, bytes):
            return var
        try:
            return var.encode('ascii')
        except AttributeError:
            raise TypeError("Got a non-string object for an ascii value")


class FloatType(_CassandraType):
    typename = 'float'

    @staticmethod
    def deserialize(byts, protocol_version):
        return float_unpack(byts)

    @staticmethod
    def serialize(byts, protocol_version):
        return float_pack(byts)


class DoubleType(_CassandraType):
    typename = 'double'

    @staticmethod
    def deserialize(byts, protocol_version):
        return double_unpack(byts)

    @staticmethod
    def serialize(byts, protocol_version):
        return double_pack(byts)


class LongType(_CassandraType):
    typename = 'bigint'

    @staticmethod
    def deserialize(byts, protocol_version):
        return int64_unpack(byts)

    @staticmethod
    def serialize(byts, protocol_version):
        return int64_pack(byts)


class CounterColumnType(LongType):
    typename = 'counter'


class Int32Type(_CassandraType):
    typename = 'int'

    @staticmethod
    def deserialize(byts, protocol_version):
        return int32_unpack(byts)

    @staticmethod
    def serialize(byts, protocol_version):
        return int32_pack(byts)


class IntegerType(_CassandraType):
    typename = 'varint'

    @staticmethod
    def deserialize(byts, protocol_version):
        return varint_unpack(byts)

    @staticmethod
    def serialize(byts, protocol_version):
        return varint_pack(byts)


class InetAddressType(_CassandraType):
    typename = 'inet'

    @staticmethod
    def deserialize(byts, protocol_version):
        if len(byts) == 16:
            return socket.inet_ntop(socket.AF_INET6, byts)
        return socket.inet_ntoa(byts)

    @staticmethod
    def serialize(addr, protocol_version):
        if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            return addr.packed
        try:
            if ':' in addr:
                return socket.inet_pton(socket.AF_INET6, addr)
            return socket.inet_aton(addr)
        except (OSError, TypeError):
            raise ValueError("can't interpret %r as an inet address" % (addr,))


class DateType(_CassandraType):
    typename = 'timestamp'

    @staticmethod
    def deserialize(byts, protocol_version):
        timestamp = int64_unpack(byts) / 1000.0
        return datetime.datetime(1970, 1, 1) + datetime.timedelta(seconds=timestamp)

    @staticmethod
    def serialize(v, protocol_version):
        try:
            # v is datetime
            timestamp_seconds = calendar.timegm(v.utctimetuple())
            timestamp = timestamp_seconds * 1e3 + getattr(v, 'microsecond', 0) / 1e3
        except AttributeError:
            try:
                timestamp = calendar.timegm(v.timetuple()) * 1e3
            except AttributeError:
                # Ints and floats are valid timestamps too
                if type(v) not in _number_types:
                    raise TypeError('DateType arguments must be a datetime, date, or timestamp')
                timestamp = v

        return int64_pack(int(timestamp))


class UTF8Type(_CassandraType):
    typename = 'text'
    empty_binary_ok = True

    @staticmethod
    def deserialize(byts, protocol_version):
        return byts.decode('utf8')

    @staticmethod
    def serialize(ustr, protocol_version):
        if isinstance(ustr, bytes):
            return ustr
        try:
            return ustr.encode('utf-8')
        except AttributeError:
            raise TypeError("Got a non-string object for a text value")


class VarcharType(UTF8Type):
    typename = 'varchar'


class _ParameterizedType(_CassandraType):
    num_subtypes = 'UNKNOWN'

    @classmethod
    def deserialize(cls, byts, protocol_version):
        if not cls.subtypes:
            raise NotImplementedError("can't deserialize unparameterized %s"
                                      % cls.typename)
        return cls.deserialize_safe(byts, protocol_version)

    @classmethod
    def serialize(cls, val, protocol_version):
        if not cls.subtypes:
            raise NotImplementedError("can't serialize unparameterized %s"
                                      % cls.typename)
        return cls.serialize_safe(val, protocol_version)


# Collections in protocol v1 use [short] element counts and lengths.

class _SimpleParameterizedType(_ParameterizedType):

    @classmethod
    def deserialize_safe(cls, byts, protocol_version):
        subtype, = cls.subtypes
        numelements = uint16_unpack(byts[:2])
        p = 2
        result = []
        for _ in range(numelements):
            itemlen = uint16_unpack(byts[p:p + 2])
            p += 2
            item = byts[p:p + itemlen]
            p += itemlen
            result.append(subtype.from_binary(item, protocol_version))
        return cls.adapter(result)

    @classmethod
    def serialize_safe(cls, items, protocol_version):
        if isinstance(items, (str, bytes)):
            raise TypeError("Received a string for a type that expects a sequence")

        subtype, = cls.subtypes
        buf = io.BytesIO()
        buf.write(uint16_pack(len(items)))
        for item in items:
            itembytes = subtype.to_binary(item, protocol_version)
            buf.write(uint16_pack(len(itembytes)))
            buf.write(itembytes)
        return buf.getvalue()


class ListType(_SimpleParameterizedType):
    typename = 'list'
    num_subtypes = 1
    adapter = list


class SetType(_SimpleParameterizedType):
    typename = 'set'
    num_subtypes = 1
    adapter = set


class MapType(_ParameterizedType):
    typename = 'map'
    num_subtypes = 2

    @classmethod
    def deserialize_safe(cls, byts, protocol_version):
        key_type, value_type = cls.subtypes
        numelements = uint16_unpack(byts[:2])
        p = 2
        themap = {}
        for _ in range(numelements):
            key_len = uint16_unpack(byts[p:p + 2])
            p += 2
            keybytes = byts[p:p + key_len]
            p += key_len
            val_len = uint16_unpack(byts[p:p + 2])
            p += 2
            valbytes = byts[p:p + val_len]
            p += val_len
            key = key_type.from_binary(keybytes, protocol_version)
            themap[key] = value_type.from_binary(valbytes, protocol_version)
        return themap

    @classmethod
    def serialize_safe(cls, themap, protocol_version):
        key_type, value_type = cls.subtypes
        buf = io.BytesIO()
        buf.write(uint16_pack(len(themap)))
        try:
            items = themap.items()
        except AttributeError:
            raise TypeError("Got a non-map object for a map value")
        for key, val in items:
            keybytes = key_type.to_binary(key, protocol_version)
            valbytes = value_type.to_binary(val, protocol_version)
            buf.write(uint16_pack(len(keybytes)))
            buf.write(keybytes)
            buf.write(uint16_pack(len(valbytes)))
            buf.write(valbytes)
        return buf.getvalue()


CUSTOM_TYPE_CODE = 0x0000

_cqltypes_by_code = {
    0x0001: AsciiType,
    0x0002: LongType,
    0x0003: BytesType,
    0x0004: BooleanType,
    0x0005: CounterColumnType,
    0x0006: DecimalType,
    0x0007: DoubleType,
    0x0008: FloatType,
    0x0009: Int32Type,
    0x000A: UTF8Type,
    0x000B: DateType,
    0x000C: UUIDType,
    0x000D: VarcharType,
    0x000E: IntegerType,
    0x000F: TimeUUIDType,
    0x0010: InetAddressType,
    0x0020: ListType,
    0x0021: MapType,
    0x0022: SetType,
}


def lookup_type_code(code):
    """
    Return the type class for a protocol ``[option]`` id, or raise
    :exc:`KeyError` for ids this driver cannot decode.
    """
    return _cqltypes_by_code[code]
