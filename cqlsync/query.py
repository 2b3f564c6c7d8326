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
This module holds statement-level helpers: consistency resolution, the
client-side batch buffer, parameter binding for prepared statements and the
row factories used to shape result rows.
"""

from collections import namedtuple, OrderedDict
from collections.abc import Mapping
import logging
import re
import struct

log = logging.getLogger(__name__)

BATCH_OPEN = "BEGIN BATCH\n"
BATCH_CLOSE = "APPLY BATCH;"

MUTATION_VERBS = frozenset(('INSERT', 'UPDATE', 'DELETE'))


def statement_verb(query_string):
    """
    Returns the uppercased first six characters of a statement.  This is a
    lexical check only, not a parse.
    """
    return query_string.lstrip()[:6].upper()


def is_mutation(query_string):
    return statement_verb(query_string) in MUTATION_VERBS


def resolve_consistency(query_string, consistency_level, read_consistency, write_consistency):
    """
    An explicit `consistency_level` always wins.  Otherwise ``SELECT``
    statements get `read_consistency` and everything else `write_consistency`.
    """
    if consistency_level is not None:
        return consistency_level
    if statement_verb(query_string) == 'SELECT':
        return read_consistency
    return write_consistency


def rename_parameter(query_string, name, new_name):
    """
    Rewrites every ``:name`` marker in `query_string` to ``:new_name``.
    Markers are matched case-insensitively, since Cassandra lowercases
    unquoted marker names.  Markers that merely start with `name` are left
    alone.
    """
    pattern = r':%s(?!\w)' % re.escape(name)
    return re.sub(pattern, lambda m: ':' + new_name, query_string, flags=re.IGNORECASE)


class BatchBuffer(object):
    """
    Accumulates mutation statements into one ``BEGIN BATCH ... APPLY BATCH;``
    statement with a single map of named parameters.

    Parameter names in :attr:`parameters` are unique, compared
    case-insensitively the way Cassandra compares unquoted marker names.  A
    statement whose
    parameter name is already taken has that parameter renamed to
    ``<name>_<n>``, in both its markers and its values, before it is added.
    ``n`` comes from a counter that only ever increases for the lifetime of
    the buffer.
    """

    query_string = None
    """
    The accumulated statement text, starting with ``BEGIN BATCH``.
    """

    parameters = None
    """
    A dict of every bound value in the batch, keyed by marker name.
    """

    def __init__(self):
        self.query_string = BATCH_OPEN
        self.parameters = {}
        self.statement_count = 0
        self._rename_counter = 0

    def add(self, query_string, values=None):
        """
        Appends a statement and merges its named `values` into
        :attr:`parameters`, renaming colliding names first.
        """
        if values is None:
            values = {}
        elif not isinstance(values, Mapping):
            if len(values):
                raise ValueError("Statements added to a batch must bind their values by name, got %r"
                                 % (values,))
            values = {}

        query_string, values = self._resolve_collisions(query_string, dict(values))
        self.query_string += query_string.strip().rstrip(';') + ";\n"
        self.parameters.update(values)
        self.statement_count += 1
        log.debug("Added statement %d to batch: %s", self.statement_count, query_string)

    def _resolve_collisions(self, query_string, values):
        while True:
            taken = set(name.lower() for name in self.parameters)
            collisions = [name for name in values if name.lower() in taken]
            if not collisions:
                return query_string, values
            for name in collisions:
                self._rename_counter += 1
                new_name = "%s_%d" % (name, self._rename_counter)
                if new_name.lower() in taken or any(new_name.lower() == n.lower() for n in values):
                    # already taken; the next pass tries a higher suffix
                    continue
                query_string = rename_parameter(query_string, name, new_name)
                values[new_name] = values.pop(name)

    def close(self):
        """
        Returns the complete batch statement text.
        """
        return self.query_string + BATCH_CLOSE

    def __len__(self):
        return self.statement_count

    def __str__(self):
        return u'<BatchBuffer statements=%d, parameters=%s>' % (self.statement_count, sorted(self.parameters))
    __repr__ = __str__


def bind_params(bind_metadata, values, protocol_version):
    """
    Serializes `values` in the order of a prepared statement's bind markers.

    `values` must be either a sequence, even when binding a single value,
    or a dict keyed by marker name.
    """
    if isinstance(values, Mapping):
        values_dict = values
        # the server reports unquoted marker names lowercased
        lowered = dict((k.lower(), v) for k, v in values_dict.items())
        values = []
        for col in bind_metadata:
            if col.name in values_dict:
                values.append(values_dict[col.name])
            elif col.name.lower() in lowered:
                values.append(lowered[col.name.lower()])
            else:
                raise KeyError('Column name `%s` not found in bound dict.' % (col.name,))

    if len(values) != len(bind_metadata):
        raise ValueError(
            "Wrong number of values bound (got %d, expected %d)" %
            (len(values), len(bind_metadata)))

    serialized = []
    for value, col_spec in zip(values, bind_metadata):
        if value is None:
            serialized.append(None)
            continue
        try:
            serialized.append(col_spec.type.serialize(value, protocol_version))
        except (TypeError, struct.error) as exc:
            message = ('Received an argument of invalid type for column "%s". '
                       'Expected: %s, Got: %s; (%s)' % (col_spec.name, col_spec.type.cql_parameterized_type(),
                                                        type(value), exc))
            raise TypeError(message)
    return serialized


def tuple_factory(colnames, rows):
    """
    Returns each row as a tuple

    Example::

        >>> from cqlsync.query import tuple_factory
        >>> db = Database(['127.0.0.1'], 'mykeyspace', {'row_factory': tuple_factory})
        >>> rows = db.query("SELECT name, age FROM users LIMIT 1")
        >>> print(rows[0])
        ('Bob', 42)
    """
    return rows


def named_tuple_factory(colnames, rows):
    """
    Returns each row as a `namedtuple <https://docs.python.org/3/library/collections.html#collections.namedtuple>`_.
    Column names that are not valid identifiers are replaced by positional names.
    """
    Row = namedtuple('Row', colnames, rename=True)
    return [Row(*row) for row in rows]


def dict_factory(colnames, rows):
    """
    Returns each row as a dict.  Keys keep the column order of the result.
    This is the default row factory.

    Example::

        >>> rows = db.query("SELECT name, age FROM users LIMIT 1")
        >>> print(rows[0])
        {'name': 'Bob', 'age': 42}
    """
    return [dict(zip(colnames, row)) for row in rows]


def ordered_dict_factory(colnames, rows):
    """
    Like :meth:`~cqlsync.query.dict_factory`, but returns each row as an OrderedDict,
    so the order of the columns is preserved.
    """
    return [OrderedDict(zip(colnames, row)) for row in rows]
