import csv
import io
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence

from fastapi.responses import StreamingResponse

Column = tuple[str, Callable[[Any], str]]


def _field(row: Any, name: str) -> Any:
    # dict でも Pydantic/ORM でも読めるように
    if isinstance(row, dict):
        return row.get(name)
    return getattr(row, name, None)


def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def column(name: str, source: Optional[str] = None) -> Column:
    key = source or name
    return name, lambda row: format_cell(_field(row, key))


ASSET_ITEM_COLUMNS: list[Column] = [
    column("id"),
    column("asset_model_id"),
    column("asset_tag"),
    column("serial"),
    column("status"),
    column("notes"),
    column("updated_at"),
]

LOAN_LINE_COLUMNS: list[Column] = [
    column("loan_id"),
    column("loan_status"),
    column("employee"),
    column("kind"),
    column("label"),
    column("quantity"),
    column("added_at"),
    column("returned_at"),
]


def rows_to_csv_response(
    rows: Iterable[Any],
    *,
    filename: str,
    columns: Sequence[Column],
) -> StreamingResponse:
    """
    rows(iterable) を CSV にしてダウンロードさせる StreamingResponse を返す。
    dict / Pydantic / ORM どれでもOK
    """

    def generate():
        buf = io.StringIO()
        w = csv.writer(buf)

        # header
        w.writerow([h for h, _ in columns])
        yield buf.getvalue()
        buf.seek(0)
        buf.truncate(0)

        # rows
        for row in rows:
            w.writerow([getter(row) for _, getter in columns])
            yield buf.getvalue()
            buf.seek(0)
            buf.truncate(0)

    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(generate(), media_type="text/csv; charset=utf-8", headers=headers)
