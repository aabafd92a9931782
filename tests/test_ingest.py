from pathlib import Path

import pytest

from provisioner.ingest import read_input_records


def test_reads_bom_prefixed_csv_and_skips_blank_rows(tmp_path: Path) -> None:
    path = tmp_path / "roster.csv"
    path.write_bytes("﻿Prénom;Nom \nÉlodie;Dupont\n;\nJean;\n".encode("utf-8"))

    table = read_input_records(path, delimiter=";")

    assert table.headers == ("Prénom", "Nom")
    assert table.records == ({"Prénom": "Élodie", "Nom": "Dupont"}, {"Prénom": "Jean", "Nom": ""})


def test_missing_input_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        read_input_records(tmp_path / "absent.csv")
