"""
plumcare-convert: convert one native EHR file to a FHIR transaction Bundle.

    plumcare-convert hl7v2 adt_a01.hl7
    plumcare-convert athena export.json --output bundle.json --indent 0
"""
import argparse
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from loguru import logger

from plumcare.errors import UnsupportedFormatError
from plumcare.fhir.converter import FORMATS, FHIRConverter
from plumcare.log import configure_logging

TEXT_FORMATS = ("hl7v2", "ccda")


def read_payload(source_format: str, path: Path) -> Any:
    """Read a source file: raw text for message/document formats, parsed JSON otherwise."""
    text = path.read_text(encoding="utf-8")
    if source_format in TEXT_FORMATS:
        return text
    return json.loads(text)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="plumcare-convert",
        description="Convert an HL7v2, C-CDA or vendor JSON file into a FHIR transaction Bundle",
    )
    ap.add_argument("source_format", metavar="FORMAT", choices=sorted(FORMATS),
                    help="Source format: " + ", ".join(sorted(FORMATS)))
    ap.add_argument("path", metavar="PATH", type=Path, help="Native input file")
    ap.add_argument("--output", "-o", type=Path, default=None,
                    help="Write the Bundle JSON here instead of stdout")
    ap.add_argument("--indent", type=int, default=2, help="JSON indentation (0 for compact)")
    ap.add_argument("--log-level", default=None, help="Override PLUMCARE_LOG_LEVEL")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)

    try:
        payload = read_payload(args.source_format, args.path)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Cannot read {}: {}", args.path, e)
        return 1

    try:
        result = FHIRConverter().convert(args.source_format, payload)
    except UnsupportedFormatError as e:
        logger.error(str(e))
        return 1

    if not result.success:
        print(result.error, file=sys.stderr)
        return 1

    output = json.dumps(result.bundle_dict, indent=args.indent or None)
    if args.output:
        args.output.write_text(output + "\n", encoding="utf-8")
        logger.info("Wrote {} ({})", args.output, result.resource_counts)
    else:
        print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
