from backend.services.importer import parse_student_csv, to_registration


def test_header_row_is_skipped():
    text = (
        "Name,Gender,Class,Drop,Admin No,Transport,Meal\n"
        "Alice,Female,4A,Gate 1,ADM-1,yes,no\n"
    )
    rows = parse_student_csv(text)
    assert len(rows) == 1
    assert rows[0]["name"] == "Alice"
    assert rows[0]["transport_paid"] is True
    assert rows[0]["meal_paid"] is False


def test_rows_without_header_and_short_rows():
    text = (
        "Bob,Male,5B,Market,ADM-2,PAID,true,B7,Blue Bus\n"
        "too,short,row\n"
        "\n"
        "Cara,Female,5B,Market,ADM-3\n"
    )
    rows = parse_student_csv(text)
    assert [r["admin_number"] for r in rows] == ["ADM-2", "ADM-3"]
    assert rows[0]["meal_paid"] is True
    assert rows[0]["bus_number"] == "B7"
    assert rows[0]["bus_name"] == "Blue Bus"
    assert rows[1]["transport_paid"] is False
    assert rows[1]["bus_number"] is None


def test_quoted_cells_keep_commas():
    rows = parse_student_csv('"Doe, Jane",Female,6C,"North Rd, stop 2",ADM-9,no,yes\n')
    assert rows[0]["name"] == "Doe, Jane"
    assert rows[0]["drop_location"] == "North Rd, stop 2"


def test_empty_text():
    assert parse_student_csv("") == []
    assert parse_student_csv("   \n") == []


def test_to_registration_drops_line_number():
    row = parse_student_csv("Eve,Female,1A,Gate,ADM-5,no,no\n")[0]
    reg = to_registration(row)
    assert "line" not in reg
    assert reg["admin_number"] == "ADM-5"
