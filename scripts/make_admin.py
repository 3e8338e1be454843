import argparse
import os
import sqlite3
import sys

DEFAULT_DB = "data/portraits.db"


def make_admin(db_path: str, telegram_id: str) -> bool:
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()
        cur.execute("UPDATE users SET is_admin=1 WHERE telegram_id=?", (str(telegram_id),))
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Выдать пользователю права администратора")
    parser.add_argument("telegram_id", help="Telegram ID пользователя")
    parser.add_argument("--db", default=DEFAULT_DB, help=f"путь к базе (по умолчанию {DEFAULT_DB})")
    args = parser.parse_args(argv)

    if not os.path.exists(args.db):
        print(f"Ошибка: база {args.db} не найдена. Убедитесь, что вы в корне проекта.")
        return 2

    if not make_admin(args.db, args.telegram_id):
        print(f"Пользователь с telegram_id={args.telegram_id} не найден. Он должен хотя бы раз войти на сайт.")
        return 1

    print(f"Готово: пользователь {args.telegram_id} теперь администратор.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
