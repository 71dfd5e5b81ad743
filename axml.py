#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
axml.py — минимальный декодер бинарного Android XML (AXML).

Умеет ровно столько, сколько нужно, чтобы достать значение атрибута
(например, ``package``) у элемента ``<manifest>`` без внешних утилит.
Все чтения проверяют границы буфера: APK — недоверенный ввод.
"""

import logging
import struct
from enum import IntEnum
from typing import Iterator, List, NamedTuple, Optional, Union


# ---------------------------------------------------------
# Константы формата
# ---------------------------------------------------------

AXML_MAGIC = 0x00080003
FILE_HEADER_SIZE = 8
CHUNK_HEADER_SIZE = 8

UTF8_FLAG = 0x100
NO_ENTRY = 0xFFFFFFFF

# смещения внутри чанка START_ELEMENT
ELEMENT_NAME_OFFSET = 20
ELEMENT_ATTR_COUNT_OFFSET = 28
ELEMENT_HEADER_SIZE = 36
ATTRIBUTE_SIZE = 20

# типы Res_value
TYPE_NULL = 0x00
TYPE_REFERENCE = 0x01
TYPE_STRING = 0x03
TYPE_INT_DEC = 0x10
TYPE_INT_HEX = 0x11
TYPE_INT_BOOLEAN = 0x12


class ChunkType(IntEnum):
    NULL = 0x0000
    STRING_POOL = 0x0001
    XML = 0x0003
    XML_START_NAMESPACE = 0x0100
    XML_END_NAMESPACE = 0x0101
    XML_START_ELEMENT = 0x0102
    XML_END_ELEMENT = 0x0103
    XML_CDATA = 0x0104
    XML_RESOURCE_MAP = 0x0180
    UNKNOWN = -1

    @classmethod
    def of(cls, value: int) -> "ChunkType":
        """Тип чанка по числу; всё нераспознанное — UNKNOWN"""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# ---------------------------------------------------------
# Ошибки
# ---------------------------------------------------------

class AXMLError(ValueError):
    """Базовая ошибка декодирования AXML"""


class NotBinaryXml(AXMLError):
    pass


class StringPoolMissing(AXMLError):
    pass


class ElementNotFound(AXMLError):
    pass


class AttributeNotFound(AXMLError):
    pass


class Truncated(AXMLError):
    """Чтение за пределами буфера. Мягкая ошибка: обычно превращается в пустое значение."""

    def __init__(self, offset: int, size: int, length: int):
        super().__init__(f"чтение {size} байт по смещению {offset} за пределами буфера ({length} байт)")
        self.offset = offset
        self.size = size
        self.length = length


# ---------------------------------------------------------
# Структуры
# ---------------------------------------------------------

class ChunkHeader(NamedTuple):
    offset: int
    chunk_type: ChunkType
    header_size: int
    chunk_size: int


class TypedValue(NamedTuple):
    size: int
    data_type: int
    data: int


class Attribute(NamedTuple):
    namespace_index: int
    name_index: int
    raw_value_index: int
    typed_value: TypedValue


class StartElement(NamedTuple):
    offset: int
    name_index: int
    name: str
    attribute_count: int


class Document(NamedTuple):
    data: bytes
    strings: "StringPool"
    body_offset: int


# ---------------------------------------------------------
# Примитивное чтение
# ---------------------------------------------------------

_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")


def _check(buf: bytes, offset: int, size: int) -> None:
    if offset < 0 or offset + size > len(buf):
        raise Truncated(offset, size, len(buf))


def read_u8(buf: bytes, offset: int) -> int:
    _check(buf, offset, 1)
    return buf[offset]


def read_u16(buf: bytes, offset: int) -> int:
    _check(buf, offset, 2)
    return _U16.unpack_from(buf, offset)[0]


def read_u32(buf: bytes, offset: int) -> int:
    _check(buf, offset, 4)
    return _U32.unpack_from(buf, offset)[0]


def read_chunk_header(buf: bytes, offset: int) -> ChunkHeader:
    return ChunkHeader(
        offset=offset,
        chunk_type=ChunkType.of(read_u16(buf, offset)),
        header_size=read_u16(buf, offset + 2),
        chunk_size=read_u32(buf, offset + 4),
    )


# ---------------------------------------------------------
# Пул строк
# ---------------------------------------------------------

class StringPool:
    """
    Таблица строк документа.

    ``len(pool)`` всегда равен объявленному ``string_count``. Строки, которые не
    удалось прочитать (смещение за концом буфера и т.п.), считаются пустыми;
    хвост таблицы, для которого нет даже слотов смещений, не хранится вовсе.
    """

    def __init__(self, strings: List[str], count: int, is_utf8: bool):
        self._strings = strings
        self._count = count
        self.is_utf8 = is_utf8

    def __len__(self) -> int:
        return self._count

    def __getitem__(self, index: int) -> str:
        if index < 0 or index >= self._count:
            raise IndexError(index)
        if index < len(self._strings):
            return self._strings[index]
        return ""

    def get(self, index: int) -> Optional[str]:
        """Строка по индексу или None, если индекс не указывает в пул"""
        if 0 <= index < self._count:
            return self[index]
        return None

    def __repr__(self):
        return f"StringPool(count={self._count}, utf8={self.is_utf8})"


def _utf8_length(buf: bytes, pos: int):
    first = read_u8(buf, pos)
    if first & 0x80:
        return ((first & 0x7F) << 8) | read_u8(buf, pos + 1), pos + 2
    return first, pos + 1


def _utf16_length(buf: bytes, pos: int):
    first = read_u16(buf, pos)
    if first & 0x8000:
        return ((first & 0x7FFF) << 16) | read_u16(buf, pos + 2), pos + 4
    return first, pos + 2


def _decode_utf8(buf: bytes, pos: int) -> str:
    _, pos = _utf8_length(buf, pos)  # длина в символах не нужна
    byte_count, pos = _utf8_length(buf, pos)
    return buf[pos:min(pos + byte_count, len(buf))].decode("utf-8", errors="replace")


def _decode_utf16(buf: bytes, pos: int) -> str:
    char_count, pos = _utf16_length(buf, pos)
    end = min(pos + char_count * 2, len(buf))
    end -= (end - pos) % 2
    return buf[pos:end].decode("utf-16-le", errors="replace")


def decode_string_pool(buf: bytes, offset: int) -> StringPool:
    """Декодирует чанк пула строк, начинающийся по абсолютному смещению ``offset``"""
    try:
        count = read_u32(buf, offset + 8)
        flags = read_u32(buf, offset + 16)
        strings_start = read_u32(buf, offset + 20)
    except Truncated as e:
        raise StringPoolMissing(f"заголовок пула строк обрезан: {e}") from e

    is_utf8 = bool(flags & UTF8_FLAG)
    decode = _decode_utf8 if is_utf8 else _decode_utf16
    offsets_start = offset + 28
    data_start = offset + strings_start

    # слоты смещений, которые физически есть в буфере
    available = min(count, max(0, (len(buf) - offsets_start) // 4))
    if available < count:
        logging.debug(f"пул строк: объявлено {count} строк, в буфере слотов только для {available}")

    strings = []
    for i in range(available):
        pos = data_start + read_u32(buf, offsets_start + i * 4)
        if pos >= len(buf):
            logging.debug(f"строка #{i}: смещение {pos} за концом буфера")
            strings.append("")
            continue
        try:
            strings.append(decode(buf, pos))
        except Truncated:
            logging.debug(f"строка #{i}: обрезан префикс длины")
            strings.append("")
    return StringPool(strings, count, is_utf8)


# ---------------------------------------------------------
# Обход чанков
# ---------------------------------------------------------

def parse_document(data: bytes) -> Document:
    """Проверяет заголовок файла и декодирует пул строк"""
    if len(data) < FILE_HEADER_SIZE or read_u32(data, 0) != AXML_MAGIC:
        raise NotBinaryXml("не бинарный XML: неверная сигнатура")

    try:
        pool_header = read_chunk_header(data, FILE_HEADER_SIZE)
    except Truncated as e:
        raise StringPoolMissing("пул строк не найден: файл обрезан") from e
    if pool_header.chunk_type != ChunkType.STRING_POOL:
        raise StringPoolMissing(f"пул строк не найден: первый чанк имеет тип 0x{read_u16(data, 8):04x}")

    strings = decode_string_pool(data, FILE_HEADER_SIZE)
    return Document(data, strings, FILE_HEADER_SIZE + pool_header.chunk_size)


def iter_chunks(data: bytes, start: int) -> Iterator[ChunkHeader]:
    """Последовательно читает заголовки чанков, начиная с ``start``"""
    pos = start
    while pos + CHUNK_HEADER_SIZE <= len(data):
        header = read_chunk_header(data, pos)
        if header.chunk_size == 0:
            break
        if header.chunk_size < CHUNK_HEADER_SIZE or header.chunk_size < header.header_size:
            logging.debug(f"чанк по смещению {pos}: размер {header.chunk_size} меньше заголовка, обход остановлен")
            break
        yield header
        pos += header.chunk_size


def iter_start_elements(document: Document) -> Iterator[StartElement]:
    data = document.data
    for chunk in iter_chunks(data, document.body_offset):
        if chunk.chunk_type != ChunkType.XML_START_ELEMENT:
            continue
        if chunk.offset + ELEMENT_HEADER_SIZE > len(data):
            continue
        name_index = read_u32(data, chunk.offset + ELEMENT_NAME_OFFSET)
        yield StartElement(
            offset=chunk.offset,
            name_index=name_index,
            name=document.strings.get(name_index) or "",
            attribute_count=read_u16(data, chunk.offset + ELEMENT_ATTR_COUNT_OFFSET),
        )


# ---------------------------------------------------------
# Атрибуты
# ---------------------------------------------------------

def iter_attributes(document: Document, element: StartElement) -> Iterator[Attribute]:
    """Атрибуты элемента; обход обрывается на первом слоте, не влезающем в буфер"""
    data = document.data
    for i in range(element.attribute_count):
        ao = element.offset + ELEMENT_HEADER_SIZE + i * ATTRIBUTE_SIZE
        if ao + ATTRIBUTE_SIZE > len(data):
            logging.debug(f"атрибут #{i} элемента <{element.name}> обрезан")
            break
        yield Attribute(
            namespace_index=read_u32(data, ao),
            name_index=read_u32(data, ao + 4),
            raw_value_index=read_u32(data, ao + 8),
            typed_value=TypedValue(
                size=read_u16(data, ao + 12),
                data_type=read_u8(data, ao + 15),
                data=read_u32(data, ao + 16),
            ),
        )


def resolve_value(strings: StringPool, attribute: Attribute) -> Optional[str]:
    """Строковое значение атрибута: сырая строка, иначе typed value типа string"""
    raw = strings.get(attribute.raw_value_index)
    if raw is not None:
        return raw
    # size у typed value не проверяется
    if attribute.typed_value.data_type == TYPE_STRING:
        return strings.get(attribute.typed_value.data)
    return None


def _find_element(document: Document, tag: str) -> StartElement:
    for element in iter_start_elements(document):
        if element.name == tag:
            return element
    raise ElementNotFound(f"элемент <{tag}> не найден")


def _matching_attributes(document: Document, element: StartElement, name: str) -> Iterator[Attribute]:
    for attribute in iter_attributes(document, element):
        if document.strings.get(attribute.name_index) == name:
            yield attribute


def _as_document(source: Union[bytes, Document]) -> Document:
    if isinstance(source, Document):
        return source
    return parse_document(source)


def find_attribute(source: Union[bytes, Document], tag: str, attribute: str) -> str:
    """
    Значение атрибута ``attribute`` у первого элемента ``tag``.

    ``source`` — сырые байты или уже разобранный Document, чтобы несколько
    запросов к одному манифесту не декодировали пул строк заново.

    Рассматривается только первый элемент с таким именем. Атрибут без
    пригодного значения не прерывает поиск по остальным атрибутам.
    """
    document = _as_document(source)
    element = _find_element(document, tag)
    for attr in _matching_attributes(document, element, attribute):
        value = resolve_value(document.strings, attr)
        if value is not None:
            return value
    raise AttributeNotFound(f"элемент <{tag}> не содержит атрибута {attribute}")


def lookup_attribute(source: Union[bytes, Document], tag: str, attribute: str) -> Optional[str]:
    """То же, что find_attribute, но None вместо ElementNotFound/AttributeNotFound"""
    try:
        return find_attribute(source, tag, attribute)
    except (ElementNotFound, AttributeNotFound):
        return None


def find_typed_value(source: Union[bytes, Document], tag: str, attribute: str) -> TypedValue:
    """Typed value атрибута (для числовых полей вроде versionCode)"""
    document = _as_document(source)
    element = _find_element(document, tag)
    for attr in _matching_attributes(document, element, attribute):
        return attr.typed_value
    raise AttributeNotFound(f"элемент <{tag}> не содержит атрибута {attribute}")


def get_package_name(source: Union[bytes, Document]) -> str:
    """Значение package у <manifest>"""
    return find_attribute(source, "manifest", "package")
