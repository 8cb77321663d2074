import json

from nodegroup_sync.utils.reporting import print_rows, select_columns, summarize_counts


def test_table_keeps_columns_with_data(capsys):
    rows = [
        {"name": "Web", "id": "aaaaaaaa-bbbb-4ccc-8ddd-eeeeeeeeeeee", "result": "updated",
         "changes": "description", "error": ""},
        {"name": "Infra", "id": "", "result": "unchanged", "changes": "", "error": ""},
    ]
    assert select_columns(rows) == ["name", "id", "result", "changes"]
    print_rows(rows)
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split("|")[1].strip() == "name"
    assert "aaaaaaaa…eeee" in lines[2]
    assert "—" in lines[3]


def test_json_output(capsys):
    print_rows([{"name": "Web", "pinned": ["a"]}], fmt="json")
    assert json.loads(capsys.readouterr().out) == [{"name": "Web", "pinned": ["a"]}]


def test_summary_order():
    assert summarize_counts({"ERROR": 1, "CREATED": 2}).startswith("CREATED=2 | UPDATED=0")
