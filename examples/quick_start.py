#!/usr/bin/env python3
# Example usage of flatfile_db_engine
from rich.console import Console
from rich.table import Table as RichTable

from flatfile_db_engine import Database, Field, Schema

_console = Console()


def progress_printer(evt):
    if evt.get("pct") in (0, 100):
        _console.print(f"[dim]\\[progress] {evt['phase']} {evt['pct']}% {evt.get('msg', '')}[/dim]")


def show(title, entries):
    table = RichTable(title=title)
    for col in ("name", "age", "email"):
        table.add_column(col)
    for e in entries:
        table.add_row(e["name"], str(e["age"]), e["email"] or "-")
    _console.print(table)


def main() -> None:
    # Open (or create) ./demo_database; tables are listed in ./demo_database/table.info
    db = Database.open("demo_database", on_progress=progress_printer)
    if "users" not in db:
        db.create_table("users", ["name", "age", "email"])
    users = db.table("users")

    # Optional typed schema: validates writes and converts values on read
    schema = Schema([Field("name"), Field("age", "integer"), Field("email", "email", nullable=True)])
    users.set_schema(schema)
    users.set_parse_function(schema.parse)

    users.post({"name": "Alice", "age": 33, "email": "alice@example.org"})
    users.post({"name": "Bob", "age": 17})
    users.post({"name": "Carol", "age": 52})
    show("all users", users.get_all())

    # Comparisons see parsed values, so this is a numeric comparison
    show("adults", users.get_where_gte("age", 18))

    modified = users.patch_where("name", "Bob", {"age": 18})
    _console.print(f"patched {modified} entries")

    deleted = users.delete_with_filter(lambda e: e["age"] > 50)
    _console.print(f"deleted {deleted} entries")
    show("remaining", users.get_all())

    db.drop_table("users")


if __name__ == "__main__":
    main()
