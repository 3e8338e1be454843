from scripts import make_admin


async def test_make_admin_script(db, settings, capsys):
    await db.upsert_user("4242", "dave", "Dave", None)

    assert make_admin.main(["4242", "--db", settings.db_path]) == 0
    assert (await db.get_user_by_telegram_id("4242"))["is_admin"] == 1
    assert "4242" in capsys.readouterr().out

    assert make_admin.main(["1", "--db", settings.db_path]) == 1
    assert make_admin.main(["4242", "--db", settings.db_path + ".missing"]) == 2
