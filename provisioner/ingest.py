import csv
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class InputTable:
    headers: tuple[str, ...]
    records: tuple[dict[str, str], ...]


def read_input_records(input_path: Path, *, delimiter: str = ",", encoding: str = "utf-8-sig") -> InputTable:
    if not input_path.exists():
        raise FileNotFoundError(f"input file not found: {input_path}")

    records: list[dict[str, str]] = []
    with input_path.open("r", encoding=encoding, newline="") as infile:
        reader = csv.DictReader(infile, delimiter=delimiter)
        headers = tuple(name.strip() for name in (reader.fieldnames or []))
        for row in reader:
            values = [row.get(name) for name in reader.fieldnames or []]
            if not any((value or "").strip() for value in values):
                continue
            records.append({header: (value or "") for header, value in zip(headers, values)})
    return InputTable(headers=headers, records=tuple(records))
