# coding=utf-8
import logging
from struct import unpack

__doc__ = """
Schema-less decoding and rendering of protobuf wire data. Written for py3.7+.

License: MIT

To inspect a payload, pass a bytes-like object to decode_fields(). This returns
a tuple of decoded fields in the exact order they appeared on the wire;
duplicate field ids are kept as separate entries. render_fields() turns that
tuple into indented text, one line per field:

    [1 Varint]: 150 (0x96)
    [2 Length-delimited]: (5 bytes) "hello"
    [3 Length-delimited]: (3 bytes)
        [1 Varint]: 150 (0x96)
    [4 Fixed64]: 4607182418800017408 (0x3ff0000000000000) (1.000000)

There is no schema, so every length-delimited value is classified by a
heuristic:

    * If the payload decodes cleanly as a non-empty sequence of fields (with
      any group markers properly balanced), it is a nested message.
    * Otherwise, if it is valid UTF-8 made only of printable and whitespace
      characters, it is text.
    * Otherwise it is opaque binary and is rendered as hex.

Misclassification is possible (short ASCII strings are often also valid
messages); the structured interpretation always wins when both apply. An empty
payload is classified as the empty string.


Decoding functions:

    * decode_field(data, offset=0)
        Decodes a single field, returning a 2-tuple of the field and the number
        of bytes consumed.

    * decode_fields(data, offset=0, limit=None)
        Decodes fields until the data (or the limit offset) is exhausted
        exactly. Returns a tuple of fields.

    * classify_payload(data)
        Runs the nested message heuristic on a length-delimited payload and
        returns Structured, Text, or OPAQUE.

All three accept the keyword options max_depth (maximum nesting of decoded
sub-messages, default DEFAULT_MAX_DEPTH) and scan_budget (total payload bytes
the heuristic may re-scan per call, default DEFAULT_SCAN_BUDGET, None for no
limit). Exceeding max_depth raises MaxDepthExceeded; running out of scan budget
only stops further sub-message attempts.

Errors are all subclasses of DecodeError (itself a ValueError) and carry the
offset of the problem, and for truncations the expected and available byte
counts. decode_fields() attaches the fields it decoded before failing to the
error's fields attribute.


Rendering functions:

    * render_field(field, indent_level=0, indent=4)
    * render_fields(fields, indent_level=0, indent=4)
    * iter_render(field, depth, indent)
        Generator of text chunks; used internally by the functions above.
"""

logger = logging.getLogger('deproto')

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_START_GROUP = 3
WIRE_END_GROUP = 4
WIRE_FIXED32 = 5

WIRE_TYPE_NAMES = {
    WIRE_VARINT: 'Varint',
    WIRE_FIXED64: 'Fixed64',
    WIRE_LENGTH_DELIMITED: 'Length-delimited',
    WIRE_FIXED32: 'Fixed32',
}

# A 64 bit value takes at most 10 groups of 7 bits; the last group may only
# carry the single remaining bit.
MAX_VARINT_BYTES = 10

DEFAULT_MAX_DEPTH = 64
DEFAULT_SCAN_BUDGET = 64 * 1024 * 1024


class DecodeError(ValueError):
    """
    Base class for errors raised while decoding wire data.

    offset is the absolute position in the decoded buffer where the problem
    was found. expected and available are byte counts, set for truncations.
    fields holds whatever decode_fields() managed to decode before the error;
    it is diagnostic only.
    """

    def __init__(self, message, *, offset=None, expected=None, available=None):
        super().__init__(message)
        self.offset = offset
        self.expected = expected
        self.available = available
        self.fields = ()


class MalformedKey(DecodeError):
    pass


class MalformedVarint(DecodeError):
    pass


class TruncatedFixed(DecodeError):
    pass


class MalformedLength(DecodeError):
    pass


class TruncatedLength(DecodeError):
    pass


class UnknownWireType(DecodeError):
    pass


class MaxDepthExceeded(DecodeError):
    pass


def _amend(ex, context, klass=None):
    """Copy a decode error with context appended to its message."""
    return (klass or type(ex))(
        f'{ex.args[0]} {context}',
        offset=ex.offset,
        expected=ex.expected,
        available=ex.available,
    )


def wire_type_name(wire_type):
    return WIRE_TYPE_NAMES.get(wire_type, f'Unknown({wire_type})')


def uint_to_signed(n):
    """
    Convert a non-negative integer to the signed value with zig-zag decoding.
    """
    return (n >> 1) ^ (0 - (n & 1))


def read_varint(data, *, offset=0, limit=None):
    """
    Read a varint from the given offset in the given byte data.

    Returns a tuple containing the numeric value of the varint and
    the number of bytes consumed.

    If the varint representation does not end before the end of the data (or
    the limit offset), or does not fit in 64 bits, MalformedVarint is raised.
    """
    end = len(data) if limit is None else min(limit, len(data))
    result = 0
    bytes_read = 0
    while True:
        if offset + bytes_read >= end:
            raise MalformedVarint(
                f'Data truncated in varint at position {offset}',
                offset=offset,
                expected=bytes_read + 1,
                available=bytes_read,
            )
        byte = data[offset + bytes_read]
        if bytes_read == MAX_VARINT_BYTES - 1 and byte > 1:
            raise MalformedVarint(
                f'Varint overflows 64 bits at position {offset}',
                offset=offset,
            )
        result |= (byte & 0x7f) << (7 * bytes_read)
        bytes_read += 1
        if byte & 0x80 == 0:
            return result, bytes_read


class _DecodedField:
    __slots__ = ('id',)
    wire_type = None

    def __init__(self, field_id):
        self.id = field_id

    def _values(self):
        return ()

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return other.id == self.id and other._values() == self._values()

    def __hash__(self):
        return hash((type(self), self.id, self._values()))

    def __repr__(self):
        args = ', '.join(repr(arg) for arg in (self.id, *self._values()))
        return f'{type(self).__name__}({args})'

    @property
    def wire_type_name(self):
        return wire_type_name(self.wire_type)


class VarintField(_DecodedField):
    __slots__ = ('value',)
    wire_type = WIRE_VARINT

    def __init__(self, field_id, value):
        super().__init__(field_id)
        self.value = value

    def _values(self):
        return (self.value,)

    @property
    def signed(self):
        return uint_to_signed(self.value)

    @property
    def int64(self):
        if self.value & 0x8000_0000_0000_0000:
            return self.value - 0x1_0000_0000_0000_0000
        else:
            return self.value

    @property
    def bool(self):
        return bool(self.value)


class _FixedField(_DecodedField):
    __slots__ = ('data',)
    size = None

    def __init__(self, field_id, data):
        super().__init__(field_id)
        if len(data) != self.size:
            raise ValueError(
                f'{type(self).__name__} value must have length {self.size}'
            )
        self.data = bytes(data)

    def _values(self):
        return (self.data,)


class Fixed64Field(_FixedField):
    __slots__ = ()
    wire_type = WIRE_FIXED64
    size = 8

    @property
    def fixed64(self):
        result, = unpack('<Q', self.data)
        return result

    value = fixed64

    @property
    def sfixed64(self):
        result, = unpack('<q', self.data)
        return result

    @property
    def double(self):
        result, = unpack('<d', self.data)
        return result


class Fixed32Field(_FixedField):
    __slots__ = ()
    wire_type = WIRE_FIXED32
    size = 4

    @property
    def fixed32(self):
        result, = unpack('<L', self.data)
        return result

    value = fixed32

    @property
    def sfixed32(self):
        result, = unpack('<l', self.data)
        return result

    @property
    def float(self):
        result, = unpack('<f', self.data)
        return result


class Structured:
    """A length-delimited payload that decoded as a nested message."""
    __slots__ = ('fields',)

    def __init__(self, fields):
        self.fields = tuple(fields)

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return other.fields == self.fields

    def __hash__(self):
        return hash(self.fields)

    def __repr__(self):
        return f'{type(self).__name__}({repr(self.fields)})'


class Text:
    """A length-delimited payload that is printable text."""
    __slots__ = ('string',)

    def __init__(self, string):
        self.string = string

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return other.string == self.string

    def __hash__(self):
        return hash(self.string)

    def __repr__(self):
        return f'{type(self).__name__}({repr(self.string)})'


class Opaque:
    """A length-delimited payload with no better interpretation than bytes."""
    __slots__ = ()

    def __repr__(self):
        return 'OPAQUE'


OPAQUE = Opaque()


class LengthDelimitedField(_DecodedField):
    __slots__ = ('data', 'payload',)
    wire_type = WIRE_LENGTH_DELIMITED

    def __init__(self, field_id, data, payload=OPAQUE):
        super().__init__(field_id)
        self.data = bytes(data)
        self.payload = payload

    def _values(self):
        return (self.data, self.payload)

    @property
    def length(self):
        return len(self.data)

    @property
    def fields(self):
        """The nested fields, or None if the payload is not a message."""
        if isinstance(self.payload, Structured):
            return self.payload.fields
        return None

    @property
    def string(self):
        """The payload as text, or None if it was not classified as text."""
        if isinstance(self.payload, Text):
            return self.payload.string
        return None


class _TagOnlyField(_DecodedField):
    __slots__ = ()


class GroupStartField(_TagOnlyField):
    __slots__ = ()
    wire_type = WIRE_START_GROUP


class GroupEndField(_TagOnlyField):
    __slots__ = ()
    wire_type = WIRE_END_GROUP


# Unicode White_Space code points. str.isspace() also accepts the separator
# controls U+001C..U+001F, which are not whitespace.
_WHITESPACE = frozenset(
    '\t\n\v\f\r \x85\xa0\u1680\u2028\u2029\u202f\u205f\u3000'
    '\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a'
)


def _decode_text(data):
    try:
        text = bytes(data).decode('utf-8')
    except UnicodeDecodeError:
        return None
    if all(ch.isprintable() or ch in _WHITESPACE for ch in text):
        return text
    return None


def is_printable_text(data):
    """
    Return True if the data is valid UTF-8 consisting only of printable and
    whitespace characters. The empty byte string is printable text.
    """
    return _decode_text(data) is not None


def _groups_balanced(fields):
    open_ids = []
    for field in fields:
        if field.wire_type == WIRE_START_GROUP:
            open_ids.append(field.id)
        elif field.wire_type == WIRE_END_GROUP:
            if not open_ids or open_ids.pop() != field.id:
                return False
    return not open_ids


class _Decoder:
    """
    State for one top-level decode: the depth limit and what is left of the
    scan budget. Never shared between calls.
    """
    __slots__ = (
        'max_depth',
        'scan_budget',
        'budget_exhausted',
        'attempt_offset',
    )

    def __init__(self, max_depth, scan_budget):
        self.max_depth = max_depth
        self.scan_budget = scan_budget
        self.budget_exhausted = False
        self.attempt_offset = None

    def run(self, decode, *args):
        """
        Call one of the decoding methods, turning interpreter stack exhaustion
        into MaxDepthExceeded at the innermost payload being attempted.
        """
        try:
            return decode(*args)
        except RecursionError:
            raise MaxDepthExceeded(
                f'Nested message at position {self.attempt_offset} exceeds '
                'the interpreter recursion limit',
                offset=self.attempt_offset,
            ) from None

    def decode_fields(self, data, offset, end, depth):
        fields = []
        current_offset = offset
        while current_offset < end:
            try:
                field, bytes_read = self.decode_field(
                    data, current_offset, end, depth
                )
            except DecodeError as ex:
                ex.fields = tuple(fields)
                raise
            fields.append(field)
            current_offset += bytes_read
        return tuple(fields)

    def decode_field(self, data, offset, end, depth):
        try:
            key, key_bytes = read_varint(data, offset=offset, limit=end)
        except MalformedVarint as ex:
            raise _amend(ex, 'while parsing field key', MalformedKey)
        field_id = key >> 3
        wire_type = key & 0b111
        position = offset + key_bytes

        if wire_type == WIRE_VARINT:
            try:
                value, value_bytes = read_varint(
                    data, offset=position, limit=end
                )
            except MalformedVarint as ex:
                raise _amend(ex, f'while parsing value of field {field_id}')
            return VarintField(field_id, value), key_bytes + value_bytes

        elif wire_type in (WIRE_FIXED64, WIRE_FIXED32):
            klass = Fixed64Field if wire_type == WIRE_FIXED64 else Fixed32Field
            available = end - position
            if available < klass.size:
                raise TruncatedFixed(
                    f'Data truncated in {wire_type_name(wire_type)} value of '
                    f'field {field_id} beginning at position {position} '
                    f'(needed {klass.size} bytes, {available} available)',
                    offset=position,
                    expected=klass.size,
                    available=available,
                )
            value = data[position:position + klass.size]
            return klass(field_id, value), key_bytes + klass.size

        elif wire_type == WIRE_LENGTH_DELIMITED:
            try:
                length, length_bytes = read_varint(
                    data, offset=position, limit=end
                )
            except MalformedVarint as ex:
                raise _amend(
                    ex,
                    f'while parsing length of field {field_id}',
                    MalformedLength
                )
            start = position + length_bytes
            available = end - start
            if available < length:
                raise TruncatedLength(
                    f'Data truncated in length-delimited data of field '
                    f'{field_id} beginning at position {start} '
                    f'(was {length} long, {available} available)',
                    offset=start,
                    expected=length,
                    available=available,
                )
            payload = self.classify_payload(
                data, start, start + length, depth + 1
            )
            return (
                LengthDelimitedField(
                    field_id, data[start:start + length], payload
                ),
                key_bytes + length_bytes + length
            )

        elif wire_type == WIRE_START_GROUP:
            return GroupStartField(field_id), key_bytes

        elif wire_type == WIRE_END_GROUP:
            return GroupEndField(field_id), key_bytes

        else:
            raise UnknownWireType(
                f'Invalid field wire type {wire_type} in key '
                f'at position {offset}',
                offset=offset,
            )

    def classify_payload(self, data, start, end, depth):
        if start == end:
            return Text('')
        if self._charge(end - start):
            if depth > self.max_depth:
                raise MaxDepthExceeded(
                    f'Nested message at position {start} exceeds maximum '
                    f'depth {self.max_depth}',
                    offset=start,
                )
            self.attempt_offset = start
            try:
                fields = self.decode_fields(data, start, end, depth)
            except MaxDepthExceeded:
                raise
            except DecodeError as ex:
                logger.debug('Payload at position %d is not a message: %s',
                             start, ex)
            else:
                if _groups_balanced(fields):
                    return Structured(fields)
                logger.debug('Payload at position %d has unbalanced groups',
                             start)
        text = _decode_text(data[start:end])
        if text is not None:
            return Text(text)
        return OPAQUE

    def _charge(self, num_bytes):
        """
        Take num_bytes from the scan budget, returning False if they do not
        fit in what remains.
        """
        if self.scan_budget is None:
            return True
        if num_bytes > self.scan_budget:
            if not self.budget_exhausted:
                logger.warning(
                    'Scan budget exhausted; payloads that do not fit in the '
                    'remaining %d bytes will not be decoded as messages',
                    self.scan_budget
                )
                self.budget_exhausted = True
            return False
        self.scan_budget -= num_bytes
        return True


def decode_field(
        data,
        *,
        offset=0,
        max_depth=DEFAULT_MAX_DEPTH,
        scan_budget=DEFAULT_SCAN_BUDGET,
):
    """
    Decode one field from the given offset in a bytes-like object.

    Returns a 2-tuple of the decoded field and the number of bytes consumed,
    which is always positive. Raises a DecodeError subclass if no complete
    field can be read.
    """
    decoder = _Decoder(max_depth, scan_budget)
    return decoder.run(decoder.decode_field, data, offset, len(data), 0)


def decode_fields(
        data,
        *,
        offset=0,
        limit=None,
        max_depth=DEFAULT_MAX_DEPTH,
        scan_budget=DEFAULT_SCAN_BUDGET,
):
    """
    Decode a complete field sequence from a bytes-like object.

    Starts decoding from the given offset and consumes until the end of the
    data or the given limit (another greater or equal offset) is reached,
    whichever comes first. Fails if the last field does not end exactly there.
    Empty input yields an empty tuple.
    """
    end = len(data) if limit is None else min(limit, len(data))
    decoder = _Decoder(max_depth, scan_budget)
    return decoder.run(decoder.decode_fields, data, offset, end, 0)


def classify_payload(
        data,
        *,
        max_depth=DEFAULT_MAX_DEPTH,
        scan_budget=DEFAULT_SCAN_BUDGET,
):
    """
    Classify the payload of a length-delimited field as a nested message
    (Structured), printable text (Text) or opaque binary (OPAQUE), in that
    order of preference.
    """
    decoder = _Decoder(max_depth, scan_budget)
    return decoder.run(decoder.classify_payload, data, 0, len(data), 1)


def walk_fields(fields, *, path_prefix=()):
    """
    Yields (path, field) tuples for each field and nested field, recursively,
    in wire order. The path is a tuple of field ids; (2, 1) is field 1 inside
    field 2 at the top level. It says nothing about which repetition of a
    field id the value came from.
    """
    for field in fields:
        this_path = (*path_prefix, field.id)
        yield this_path, field
        if isinstance(field, LengthDelimitedField) and field.fields:
            yield from walk_fields(field.fields, path_prefix=this_path)


_SHORT_ESCAPES = {
    '\\': '\\\\',
    '"': '\\"',
    '\a': '\\a',
    '\b': '\\b',
    '\f': '\\f',
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
    '\v': '\\v',
}


def quote_text(text):
    """Double-quote a string, escaping quotes and non-printable characters."""

    def escaped():
        for ch in text:
            code = ord(ch)
            if ch in _SHORT_ESCAPES:
                yield _SHORT_ESCAPES[ch]
            elif ch.isprintable():
                yield ch
            elif code < 0x80:
                yield f'\\x{code:02x}'
            elif code < 0x10000:
                yield f'\\u{code:04x}'
            else:
                yield f'\\U{code:08x}'

    return f'"{"".join(escaped())}"'


def iter_render(field, depth, indent):
    yield indent * depth
    yield f'[{field.id} {field.wire_type_name}]'
    if isinstance(field, VarintField):
        yield f': {field.value} (0x{field.value:x})\n'
    elif isinstance(field, Fixed64Field):
        yield f': {field.value} (0x{field.value:x}) ({field.double:f})\n'
    elif isinstance(field, Fixed32Field):
        yield f': {field.value} (0x{field.value:x}) ({field.float:f})\n'
    elif isinstance(field, LengthDelimitedField):
        yield f': ({field.length} bytes)'
        if isinstance(field.payload, Text):
            yield f' {quote_text(field.payload.string)}\n'
        elif isinstance(field.payload, Structured):
            yield '\n'
            for child in field.payload.fields:
                yield from iter_render(child, depth + 1, indent)
        else:
            yield f' [hex] {field.data.hex()}\n'
    else:
        # group markers carry no payload
        yield '\n'


def render_field(field, indent_level=0, *, indent=4):
    """
    Render one decoded field (and its nested fields) as text, each line
    prefixed by indent_level levels of indent spaces.
    """
    return ''.join(iter_render(field, indent_level, ' ' * indent))


def render_fields(fields, indent_level=0, *, indent=4):
    return ''.join(
        render_field(field, indent_level, indent=indent)
        for field in fields
    )


__all__ = (
    'DecodeError',
    'MalformedKey',
    'MalformedVarint',
    'TruncatedFixed',
    'MalformedLength',
    'TruncatedLength',
    'UnknownWireType',
    'MaxDepthExceeded',
    'VarintField',
    'Fixed64Field',
    'Fixed32Field',
    'LengthDelimitedField',
    'GroupStartField',
    'GroupEndField',
    'Structured',
    'Text',
    'OPAQUE',
    'read_varint',
    'decode_field',
    'decode_fields',
    'classify_payload',
    'is_printable_text',
    'walk_fields',
    'render_field',
    'render_fields',
)
