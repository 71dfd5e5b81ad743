#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
manifest.py — извлечение имени пакета и версии из AndroidManifest.xml внутри APK/AAB/директории
"""

import argparse
import json
import logging
import sys
import zipfile
from pathlib import Path
from typing import Dict, Any, Optional

from androguard.core.axml import AXMLPrinter
from loguru import logger

from axml import (
    AttributeNotFound,
    ElementNotFound,
    TYPE_INT_DEC,
    TYPE_INT_HEX,
    Document,
    find_typed_value,
    get_package_name,
    lookup_attribute,
    parse_document,
)

MANIFEST_NAME = "AndroidManifest.xml"
AAB_MANIFEST = "base/manifest/AndroidManifest.xml"


# ---------------------------------------------------------
# Чтение манифеста
# ---------------------------------------------------------

def detect_source(path: Path) -> str:
    """Тип источника: APK, AAB или DIR"""
    if path.is_dir():
        return "DIR"
    suffix = path.suffix.lower()
    if suffix == ".apk":
        return "APK"
    if suffix == ".aab":
        return "AAB"
    raise ValueError(f"Неизвестный формат источника: {path}")


def _aab_candidates(zf: zipfile.ZipFile):
    names = zf.namelist()
    if AAB_MANIFEST in names:
        yield AAB_MANIFEST
    # манифест другого модуля бандла
    for name in names:
        if name != AAB_MANIFEST and name.endswith("/manifest/" + MANIFEST_NAME):
            yield name


def read_manifest_bytes(path: Path) -> bytes:
    """Сырые байты бинарного AndroidManifest.xml"""
    kind = detect_source(path)
    if kind == "DIR":
        manifest = path / MANIFEST_NAME
        if not manifest.is_file():
            raise FileNotFoundError(f"Не найден {MANIFEST_NAME} в {path}")
        return manifest.read_bytes()

    with zipfile.ZipFile(path, "r") as zf:
        if kind == "APK":
            if MANIFEST_NAME not in zf.namelist():
                raise FileNotFoundError(f"Файл {MANIFEST_NAME} не найден в {path}")
            return zf.read(MANIFEST_NAME)
        for name in _aab_candidates(zf):
            logging.debug(f"{path}: манифест {name}")
            return zf.read(name)
    raise FileNotFoundError(f"Манифест не найден в {path}")


def extract_package_name(path: Path) -> str:
    return get_package_name(read_manifest_bytes(path))


# ---------------------------------------------------------
# Данные манифеста
# ---------------------------------------------------------

def read_version_code(document: Document) -> Optional[int]:
    """versionCode хранится как typed int, но встречается и строкой"""
    try:
        value = find_typed_value(document, "manifest", "versionCode")
    except (ElementNotFound, AttributeNotFound):
        return None
    if value.data_type in (TYPE_INT_DEC, TYPE_INT_HEX):
        return value.data

    text = lookup_attribute(document, "manifest", "versionCode")
    if text is None:
        return None
    try:
        return int(text, 0)
    except ValueError:
        logging.warning(f"versionCode не число: {text!r}")
        return None


def extract_manifest_data(raw: bytes) -> Dict[str, Any]:
    document = parse_document(raw)
    return {
        "packageName": get_package_name(document),
        "versionName": lookup_attribute(document, "manifest", "versionName"),
        "versionCode": read_version_code(document),
    }


def dump_xml(raw: bytes) -> str:
    """Полный текст XML; декодирование целиком отдаётся androguard"""
    # на не-AXML androguard падает только при сериализации
    parse_document(raw)
    return AXMLPrinter(raw).get_xml().decode("utf-8", errors="replace")


# ---------------------------------------------------------
# Форматирование вывода
# ---------------------------------------------------------

def render_text(data: Dict[str, Any]) -> str:
    lines = [f"Source: {data.get('source')}"] if data.get("source") else []
    lines.append(f"Package: {data.get('packageName')}")
    lines.append(f"Version: {data.get('versionName')} ({data.get('versionCode')})")
    return "\n".join(lines)


# ---------------------------------------------------------
# CLI
# ---------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apk-manifest",
        description="Имя пакета и версия из AndroidManifest.xml в APK/AAB/директории",
    )
    parser.add_argument("source", nargs="+", help="путь(и) к APK/AAB/директории")
    parser.add_argument("-j", "--json", action="store_true", help="вывод в JSON")
    parser.add_argument("-o", "--output", help="файл для записи JSON")
    parser.add_argument("--pretty", action="store_true", help="форматированный JSON")
    parser.add_argument("-p", "--package-only", action="store_true", help="печатать только имя пакета")
    parser.add_argument("--xml", action="store_true", help="вывести декодированный манифест целиком (androguard)")
    parser.add_argument("-v", "--verbose", action="store_true", help="подробный вывод логов")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.ERROR,
        format="[%(levelname)s] %(message)s",
    )
    # androguard пишет в loguru, глушим его так же, как logging
    logger.remove()
    if args.verbose:
        logger.add(sys.stderr, level="DEBUG")

    results = []
    for src in args.source:
        path = Path(src)
        logging.info(f"Анализ {path}")
        try:
            raw = read_manifest_bytes(path)
            if args.xml:
                print(dump_xml(raw))
                results.append({"source": str(path)})
                continue
            data = extract_manifest_data(raw)
        except (OSError, zipfile.BadZipFile, ValueError) as e:
            logging.error(f"{path}: {e}")
            continue
        data["source"] = str(path)
        results.append(data)

    if args.xml:
        return 0 if results else 1

    if args.package_only:
        for res in results:
            print(res["packageName"])
    elif args.json:
        indent = 2 if args.pretty else None
        payload = results[0] if len(results) == 1 else results
        text = json.dumps(payload, ensure_ascii=False, indent=indent)
        if args.output:
            Path(args.output).write_text(text, encoding="utf-8")
        else:
            print(text)
    else:
        for res in results:
            print("=" * 60)
            print(render_text(res))
            print()

    return 0 if results else 1


if __name__ == "__main__":
    sys.exit(main())
