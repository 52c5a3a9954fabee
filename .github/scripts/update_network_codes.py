#!/usr/bin/env python3
"""Add newly published MCC+MNC codes to sms_gateway/network_codes.py.

Existing entries, comments and functions are left untouched; codes missing
from NETWORK_OPERATORS are appended in an "Additional network codes" block.
"""

import re
import sys
from email.utils import parsedate_to_datetime
from pathlib import Path

import requests

TARGET = Path(__file__).resolve().parents[2] / "sms_gateway" / "network_codes.py"

# Public MCC-MNC lists, all of them a JSON list of objects
SOURCES = [
    ("musalbas/mcc-mnc-table",
     "https://raw.githubusercontent.com/musalbas/mcc-mnc-table/master/mcc-mnc-table.json"),
    ("pbakondy/mcc-mnc-list",
     "https://raw.githubusercontent.com/pbakondy/mcc-mnc-list/master/mcc-mnc-list.json"),
    ("jsdelivr mirror",
     "https://cdn.jsdelivr.net/npm/mcc-mnc-list@latest/mcc-mnc-list.json"),
]

TABLE_RE = re.compile(r'(NETWORK_OPERATORS\s*=\s*\{)(.*?)(\n\})', re.DOTALL)
ENTRY_RE = re.compile(r'^\s*"(\d{5,6})":\s*"([^"]*)",?\s*$', re.MULTILINE)
ADDITIONAL_HEADER = "    # Additional network codes"


def parse_entries(data):
    """Map "MCCMNC" to operator name from one source list"""
    codes = {}
    for entry in data if isinstance(data, list) else []:
        if not isinstance(entry, dict):
            continue
        mcc = str(entry.get('mcc') or '').strip()
        mnc = str(entry.get('mnc') or '').strip()
        name = (entry.get('brand') or entry.get('network') or entry.get('operator') or '').strip()
        if mcc.isdigit() and mnc.isdigit() and name and '"' not in name:
            codes[f"{mcc}{mnc.zfill(2)}"] = name
    return codes


def fetch_source(name, url):
    """Return (codes, last_modified) for one source, or None when it is unusable"""
    print(f"  {name}: {url}")
    try:
        response = requests.get(url, timeout=30)
        response.raise_for_status()
        codes = parse_entries(response.json())
    except (requests.exceptions.RequestException, ValueError) as e:
        print(f"    ✗ {e}")
        return None
    if not codes:
        print("    ✗ no usable entries")
        return None

    last_modified = None
    header = response.headers.get('Last-Modified')
    if header:
        try:
            last_modified = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            pass
    print(f"    ✓ {len(codes)} codes")
    return codes, last_modified


def best_codes():
    """Codes from the most recently modified source, largest list on ties"""
    results = [r for r in (fetch_source(name, url) for name, url in SOURCES) if r]
    if not results:
        return {}
    results.sort(key=lambda r: (r[1] is not None, r[1].timestamp() if r[1] else 0, len(r[0])), reverse=True)
    return results[0][0]


def merge_into_module(path, new_codes):
    """Append unknown codes to NETWORK_OPERATORS. Returns the number added."""
    content = path.read_text(encoding='utf-8')
    match = TABLE_RE.search(content)
    if not match:
        raise SystemExit(f"NETWORK_OPERATORS not found in {path}")

    known = {code for code, _ in ENTRY_RE.findall(match.group(2))}
    added = {code: name for code, name in new_codes.items() if code not in known}
    if not added:
        return 0

    body = match.group(2).rstrip()
    if ADDITIONAL_HEADER not in body:
        body += f"\n\n{ADDITIONAL_HEADER}"
    body += "".join(f'\n    "{code}": "{added[code]}",' for code in sorted(added))

    path.write_text(content[:match.start(2)] + body + content[match.end(2):], encoding='utf-8')
    return len(added)


def main():
    print("Fetching network operator data...")
    codes = best_codes()
    if not codes:
        print("✗ No source was available")
        sys.exit(1)

    added = merge_into_module(TARGET, codes)
    if added:
        print(f"✓ Added {added} network codes to {TARGET.name}")
    else:
        print("✓ Network codes are already current")


if __name__ == "__main__":
    main()
