import importlib
import io
import json
import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

MODULES = [
    "scripthost.app",
    "scripthost.storage",
    "scripthost.sessions",
    "scripthost.security",
    "scripthost.errors",
    "scripthost",
]

ENV_KEYS = [
    "SCRIPTHOST_STORAGE_ROOT",
    "SCRIPTHOST_DATA_DIR",
    "SCRIPTHOST_UPLOADS_DIR",
    "SCRIPTHOST_LOGS_DIR",
]


class StorageTestCase(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name)
        os.environ["SCRIPTHOST_STORAGE_ROOT"] = str(self.root)
        os.environ["SCRIPTHOST_DATA_DIR"] = str(self.root / "data")
        os.environ["SCRIPTHOST_UPLOADS_DIR"] = str(self.root / "uploads")
        os.environ["SCRIPTHOST_LOGS_DIR"] = str(self.root / "logs")
        for module in MODULES:
            sys.modules.pop(module, None)
        self.storage = importlib.import_module("scripthost.storage")
        self.errors = importlib.import_module("scripthost.errors")
        self.security = importlib.import_module("scripthost.security")
        self.uploads = self.root / "uploads"

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        for module in MODULES:
            sys.modules.pop(module, None)


class UserStoreTests(StorageTestCase):
    def test_snapshot_created_empty(self):
        users_path = self.root / "data" / "users.json"
        self.assertTrue(users_path.exists())
        self.assertEqual(
            json.loads(users_path.read_text(encoding="utf-8")),
            {"users": [], "nextId": 1},
        )

    def test_create_persists_and_provisions_directory(self):
        store = self.storage.user_store
        user = store.create("alice", "hash-a")
        self.assertEqual(user, {"id": 1, "username": "alice", "passwordHash": "hash-a"})
        self.assertTrue((self.uploads / "alice").is_dir())

        second = store.create("bob", "hash-b")
        self.assertEqual(second["id"], 2)

        snapshot = json.loads((self.root / "data" / "users.json").read_text(encoding="utf-8"))
        self.assertEqual(snapshot["nextId"], 3)
        self.assertEqual([entry["username"] for entry in snapshot["users"]], ["alice", "bob"])

    def test_existing_directory_is_not_an_error(self):
        (self.uploads / "alice").mkdir(parents=True)
        self.storage.user_store.create("alice", "hash")
        self.assertTrue((self.uploads / "alice").is_dir())

    def test_duplicate_username_rejected(self):
        store = self.storage.user_store
        store.create("alice", "hash")
        with self.assertRaises(self.errors.DuplicateUsername):
            store.create("alice", "other")
        self.assertEqual(store.count(), 1)

    def test_usernames_are_case_sensitive(self):
        store = self.storage.user_store
        store.create("alice", "hash")
        store.create("Alice", "hash")
        self.assertEqual(store.count(), 2)
        self.assertIsNone(store.find_by_username("ALICE"))

    def test_unsafe_usernames_rejected_not_coerced(self):
        store = self.storage.user_store
        for username in ["../evil", "a/b", "..", ".hidden", "al ice", "x\\y"]:
            with self.assertRaises(self.errors.ValidationError, msg=username):
                store.create(username, "hash")
        self.assertEqual(store.count(), 0)
        self.assertEqual(list(self.uploads.iterdir()), [])

    def test_username_character_set(self):
        store = self.storage.user_store
        for username in ["john_doe", "Alice-1", "v1.2"]:
            store.create(username, "hash")
        for username in ["josé", "john doe", "_alice", "alice_"]:
            with self.assertRaises(self.errors.ValidationError, msg=username):
                store.create(username, "hash")
        self.assertEqual(store.count(), 3)

    def test_failed_directory_leaves_no_user_behind(self):
        self.uploads.mkdir(parents=True, exist_ok=True)
        blocker = self.uploads / "alice"
        blocker.write_bytes(b"not a directory")

        with self.assertRaises(self.errors.StoreError):
            self.storage.user_store.create("alice", "hash")
        self.assertIsNone(self.storage.user_store.find_by_username("alice"))

        blocker.unlink()
        user = self.storage.user_store.create("alice", "hash")
        self.assertEqual(user["id"], 1)
        self.assertTrue(blocker.is_dir())

    def test_next_id_stays_above_existing_ids(self):
        users_path = self.root / "data" / "users.json"
        users_path.write_text(
            json.dumps({"users": [{"id": 5, "username": "old", "passwordHash": "h"}], "nextId": 2}),
            encoding="utf-8",
        )
        user = self.storage.user_store.create("new", "hash")
        self.assertEqual(user["id"], 6)

    def test_malformed_snapshot_raises_store_error(self):
        users_path = self.root / "data" / "users.json"
        users_path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(self.errors.StoreError):
            self.storage.user_store.create("alice", "hash")
        self.assertEqual(users_path.read_text(encoding="utf-8"), "{not json")

    def test_verify_credentials_generic_failure(self):
        store = self.storage.user_store
        store.create("alice", self.security.hash_password("secret123"))

        user = store.verify_credentials("alice", "secret123")
        self.assertEqual(user["username"], "alice")

        with self.assertRaises(self.errors.AuthFailure) as wrong_password:
            store.verify_credentials("alice", "nope")
        with self.assertRaises(self.errors.AuthFailure) as unknown_user:
            store.verify_credentials("bob", "secret123")
        self.assertEqual(str(wrong_password.exception), str(unknown_user.exception))

    def test_concurrent_registrations_all_persist(self):
        store = self.storage.user_store
        names = [f"user{index}" for index in range(12)]
        failures = []

        def register(name):
            try:
                store.create(name, "hash")
            except Exception as error:  # pragma: no cover - surfaced below
                failures.append(error)

        threads = [threading.Thread(target=register, args=(name,)) for name in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(failures, [])
        snapshot = json.loads((self.root / "data" / "users.json").read_text(encoding="utf-8"))
        self.assertEqual(sorted(entry["username"] for entry in snapshot["users"]), sorted(names))
        ids = [entry["id"] for entry in snapshot["users"]]
        self.assertEqual(len(set(ids)), len(ids))
        self.assertGreater(snapshot["nextId"], max(ids))


class SaveUploadTests(StorageTestCase):
    def test_stored_name_format(self):
        stored = self.storage.save_upload("alice", "script.lua", io.BytesIO(b"print(1)"))
        prefix, token, tail = stored["name"].split("-", 2)
        self.assertTrue(prefix.isdigit())
        self.assertEqual(len(token), 8)
        self.assertEqual(tail, "script.lua")
        self.assertEqual(stored["originalName"], "script.lua")
        self.assertEqual(stored["extension"], ".lua")
        self.assertEqual(stored["size"], 8)
        self.assertEqual((self.uploads / "alice" / stored["name"]).read_bytes(), b"print(1)")

    def test_extension_is_case_insensitive(self):
        stored = self.storage.save_upload("alice", "NOTES.TXT", io.BytesIO(b"hi"))
        self.assertEqual(stored["extension"], ".txt")

    def test_disallowed_extension_rejected_before_size(self):
        with self.assertRaises(self.errors.UnsupportedFileType):
            self.storage.save_upload(
                "alice", "image.png", io.BytesIO(b"x"), declared_size=10 * 1024 * 1024
            )
        for name in ["noext", "script.lua.exe", ".lua"]:
            with self.assertRaises(self.errors.UnsupportedFileType, msg=name):
                self.storage.save_upload("alice", name, io.BytesIO(b"x"))
        self.assertFalse((self.uploads / "alice").exists())

    def test_size_boundary(self):
        limit = self.storage.MAX_UPLOAD_BYTES
        self.assertEqual(limit, 5 * 1024 * 1024)

        stored = self.storage.save_upload("alice", "big.txt", io.BytesIO(b"a" * limit))
        self.assertEqual(stored["size"], limit)

        with self.assertRaises(self.errors.PayloadTooLarge):
            self.storage.save_upload("alice", "bigger.txt", io.BytesIO(b"a" * (limit + 1)))
        remaining = sorted(path.name for path in (self.uploads / "alice").iterdir())
        self.assertEqual(remaining, [stored["name"]])

    def test_declared_size_over_limit_rejected(self):
        with self.assertRaises(self.errors.PayloadTooLarge):
            self.storage.save_upload(
                "alice",
                "big.lua",
                io.BytesIO(b"small"),
                declared_size=self.storage.MAX_UPLOAD_BYTES + 1,
            )

    def test_original_name_is_sanitized(self):
        stored = self.storage.save_upload("alice", "../../evil.lua", io.BytesIO(b"x"))
        self.assertTrue(stored["name"].endswith("-evil.lua"))
        self.assertTrue((self.uploads / "alice" / stored["name"]).is_file())

    def test_unusable_name_falls_back_to_file(self):
        stored = self.storage.save_upload("alice", "???.lua", io.BytesIO(b"x"))
        self.assertTrue(stored["name"].endswith("-file.lua"))

    def test_long_names_fit_filesystem_limits(self):
        stored = self.storage.save_upload("alice", "a" * 300 + ".lua", io.BytesIO(b"x"))
        self.assertLessEqual(len(stored["name"]), 255)
        self.assertTrue(stored["name"].endswith(".lua"))

    def test_each_upload_gets_a_new_file(self):
        first = self.storage.save_upload("alice", "same.lua", io.BytesIO(b"one"))
        second = self.storage.save_upload("alice", "same.lua", io.BytesIO(b"two"))
        self.assertNotEqual(first["name"], second["name"])
        self.assertEqual(len(list((self.uploads / "alice").iterdir())), 2)

    def test_collision_keeps_other_uploads_partial_file(self):
        stored_name = "1700000000000-abcdef12-clash.lua"
        directory = self.uploads / "alice"
        directory.mkdir(parents=True)
        in_flight = directory / f"{stored_name}.part"
        in_flight.write_bytes(b"other upload")

        with mock.patch.object(
            self.storage, "generate_stored_name", return_value=stored_name
        ):
            with self.assertRaises(self.errors.StoreError):
                self.storage.save_upload("alice", "clash.lua", io.BytesIO(b"mine"))

        self.assertEqual(in_flight.read_bytes(), b"other upload")
        self.assertFalse((directory / stored_name).exists())


class UploadSpoolTests(StorageTestCase):
    def test_spool_rejects_disallowed_names(self):
        with self.assertRaises(self.errors.UnsupportedFileType):
            self.storage.open_upload_spool("image.png")

    def test_spool_accepts_unnamed_parts(self):
        spool = self.storage.open_upload_spool(None)
        self.addCleanup(spool.close)
        spool.write(b"data")
        spool.seek(0)
        self.assertEqual(spool.read(), b"data")

    def test_spool_caps_received_bytes(self):
        spool = self.storage.open_upload_spool("script.lua")
        self.addCleanup(spool.close)
        limit = self.storage.MAX_UPLOAD_BYTES
        spool.write(b"a" * (limit - 1))
        spool.write(b"a")
        with self.assertRaises(self.errors.PayloadTooLarge):
            spool.write(b"a")


class ResolveRawPathTests(StorageTestCase):
    def setUp(self):
        super().setUp()
        self.stored = self.storage.save_upload("alice", "script.lua", io.BytesIO(b"alice"))
        (self.uploads / "bob").mkdir()
        (self.uploads / "bob" / "secret.txt").write_bytes(b"bob secret")

    def test_resolves_stored_file(self):
        path = self.storage.resolve_raw_path("alice", self.stored["name"])
        self.assertEqual(path.read_bytes(), b"alice")

    def test_traversal_rejected(self):
        for filename in [
            "../bob/secret.txt",
            "../../data/users.json",
            "/etc/passwd",
            "nested/../../bob/secret.txt",
            ".",
            "..",
        ]:
            with self.assertRaises(self.errors.BadRequest, msg=filename):
                self.storage.resolve_raw_path("alice", filename)

    def test_username_traversal_rejected(self):
        with self.assertRaises(self.errors.BadRequest):
            self.storage.resolve_raw_path("..", "bob/secret.txt")

    def test_username_that_needs_sanitizing_rejected(self):
        with self.assertRaises(self.errors.BadRequest):
            self.storage.resolve_raw_path("../bob", "secret.txt")

    def test_symlink_escape_rejected(self):
        link = self.uploads / "alice" / "link.txt"
        os.symlink(self.uploads / "bob" / "secret.txt", link)
        with self.assertRaises(self.errors.BadRequest):
            self.storage.resolve_raw_path("alice", "link.txt")

    def test_missing_and_partial_files_not_found(self):
        with self.assertRaises(self.errors.NotFound):
            self.storage.resolve_raw_path("alice", "missing.lua")
        with self.assertRaises(self.errors.NotFound):
            self.storage.resolve_raw_path("nobody", "script.lua")
        (self.uploads / "alice" / "upload.lua.part").write_bytes(b"partial")
        with self.assertRaises(self.errors.NotFound):
            self.storage.resolve_raw_path("alice", "upload.lua.part")

    def test_content_types(self):
        self.assertEqual(self.storage.raw_content_type(Path("a.lua")), "text/x-lua")
        self.assertEqual(self.storage.raw_content_type(Path("a.TXT")), "text/plain")


class ListUserFilesTests(StorageTestCase):
    def test_missing_directory_lists_nothing(self):
        self.assertEqual(self.storage.list_user_files("ghost", "http://example.test"), [])

    def test_descriptors_and_raw_url(self):
        first = self.storage.save_upload("alice", "a.lua", io.BytesIO(b"1"))
        time.sleep(0.002)
        second = self.storage.save_upload("alice", "b.txt", io.BytesIO(b"22"))
        (self.uploads / "alice" / "junk.lua.part").write_bytes(b"partial")
        (self.uploads / "alice" / "subdir").mkdir()

        listing = self.storage.list_user_files("alice", "http://example.test")
        self.assertEqual([entry["name"] for entry in listing], [first["name"], second["name"]])
        entry = listing[1]
        self.assertEqual(entry["size"], 2)
        self.assertEqual(entry["extension"], ".txt")
        self.assertEqual(entry["originalName"], "b.txt")
        self.assertTrue(entry["modifiedTime"].endswith("Z"))
        self.assertEqual(
            entry["rawUrl"], f"http://example.test/raw/alice/{second['name']}"
        )


class CleanupTempFilesTests(StorageTestCase):
    def test_only_stale_partial_files_removed(self):
        user_dir = self.uploads / "alice"
        user_dir.mkdir()
        stale = user_dir / "old.lua.part"
        fresh = user_dir / "new.lua.part"
        kept = user_dir / "keep.lua"
        for path in (stale, fresh, kept):
            path.write_bytes(b"x")
        old = time.time() - 2 * 3600
        os.utime(stale, (old, old))
        os.utime(kept, (old, old))

        self.assertEqual(self.storage.cleanup_temp_files(), 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())
        self.assertTrue(kept.exists())


if __name__ == "__main__":
    unittest.main()
