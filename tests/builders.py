from __future__ import annotations

USER_ID = "user-1"


def apex_record(**overrides: str) -> dict[str, str]:
    record = {
        "Entry Time": "2024-01-05T09:31:00",
        "Exit Time": "2024-01-05T09:45:00",
        "Contract": "es",
        "P/L": "19.50",
        "Commissions": "2.50",
        "Side": "Buy",
        "Qty": "2",
        "Entry Price": "$4500.25",
        "Exit Price": "$4510.00",
    }
    record.update(overrides)
    return record


APEX_HEADERS = list(apex_record())


def apex_csv(*records: dict[str, str]) -> str:
    lines = [",".join(APEX_HEADERS)]
    for record in records:
        lines.append(",".join(record[header] for header in APEX_HEADERS))
    return "\n".join(lines) + "\n"
