import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


class Database:
    """Read-side store for the App -> Class -> Method catalog."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS categories(
                    id TEXT PRIMARY KEY,
                    slug TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS apps(
                    id TEXT PRIMARY KEY,
                    slug TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    keywords_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS app_categories(
                    app_id TEXT NOT NULL,
                    category_id TEXT NOT NULL,
                    PRIMARY KEY (app_id, category_id)
                );
                CREATE TABLE IF NOT EXISTS classes(
                    id TEXT PRIMARY KEY,
                    app_id TEXT NOT NULL,
                    slug TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    keywords_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS methods(
                    id TEXT PRIMARY KEY,
                    class_id TEXT NOT NULL,
                    slug TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    http_verb TEXT NOT NULL,
                    description TEXT,
                    arguments_json TEXT,
                    return_type TEXT,
                    return_description TEXT,
                    keywords_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_classes_app ON classes(app_id);
                CREATE INDEX IF NOT EXISTS idx_methods_class ON methods(class_id);
                """
            )
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def seed_catalog(self, payload: Dict[str, Any]) -> Dict[str, int]:
        """
        Bulk-load a nested catalog document:
        {"categories": [...], "apps": [{..., "categories": [slug], "classes": [{..., "methods": [...]}]}]}
        Existing rows with the same slug are replaced.
        """
        now = utc_now()
        counts = {"categories": 0, "apps": 0, "classes": 0, "methods": 0}
        async with aiosqlite.connect(self.path) as db:
            category_ids: Dict[str, str] = {}
            cursor = await db.execute("SELECT slug, id FROM categories")
            for slug, cat_id in await cursor.fetchall():
                category_ids[slug] = cat_id
            await cursor.close()
            for cat in payload.get("categories") or []:
                cat_id = category_ids.get(cat["slug"]) or uuid.uuid4().hex
                category_ids[cat["slug"]] = cat_id
                await db.execute(
                    "INSERT OR REPLACE INTO categories(id, slug, name) VALUES (?,?,?)",
                    (cat_id, cat["slug"], cat.get("name") or cat["slug"]),
                )
                counts["categories"] += 1
            for app in payload.get("apps") or []:
                app_id = app.get("id") or uuid.uuid4().hex
                await db.execute(
                    "INSERT OR REPLACE INTO apps(id, slug, name, description, keywords_json, created_at, updated_at) "
                    "VALUES (?,?,?,?,?,?,?)",
                    (
                        app_id,
                        app["slug"],
                        app.get("name") or app["slug"],
                        app.get("description"),
                        json.dumps(app.get("keywords") or []),
                        now,
                        now,
                    ),
                )
                counts["apps"] += 1
                for cat_slug in app.get("categories") or []:
                    cat_id = category_ids.get(cat_slug)
                    if cat_id is None:
                        cat_id = uuid.uuid4().hex
                        category_ids[cat_slug] = cat_id
                        await db.execute(
                            "INSERT INTO categories(id, slug, name) VALUES (?,?,?)",
                            (cat_id, cat_slug, cat_slug),
                        )
                        counts["categories"] += 1
                    await db.execute(
                        "INSERT OR IGNORE INTO app_categories(app_id, category_id) VALUES (?,?)",
                        (app_id, cat_id),
                    )
                for cls in app.get("classes") or []:
                    class_id = cls.get("id") or uuid.uuid4().hex
                    await db.execute(
                        "INSERT OR REPLACE INTO classes(id, app_id, slug, name, description, keywords_json, created_at, updated_at) "
                        "VALUES (?,?,?,?,?,?,?,?)",
                        (
                            class_id,
                            app_id,
                            cls["slug"],
                            cls.get("name") or cls["slug"],
                            cls.get("description"),
                            json.dumps(cls.get("keywords") or []),
                            now,
                            now,
                        ),
                    )
                    counts["classes"] += 1
                    for method in cls.get("methods") or []:
                        await db.execute(
                            "INSERT OR REPLACE INTO methods(id, class_id, slug, name, path, http_verb, description, "
                            "arguments_json, return_type, return_description, keywords_json, created_at, updated_at) "
                            "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                            (
                                method.get("id") or uuid.uuid4().hex,
                                class_id,
                                method["slug"],
                                method.get("name") or method["slug"],
                                method.get("path") or "/",
                                str(method.get("http_verb") or "GET").upper(),
                                method.get("description"),
                                json.dumps(method.get("arguments") or []),
                                method.get("return_type"),
                                method.get("return_description"),
                                json.dumps(method.get("keywords") or []),
                                now,
                                now,
                            ),
                        )
                        counts["methods"] += 1
            await db.commit()
        return counts

    async def list_categories(self) -> List[dict]:
        rows = await self.fetchall("SELECT slug, name FROM categories ORDER BY name ASC")
        return [dict(row) for row in rows]

    async def fetch_apps(self, category_slugs: Iterable[str] = ()) -> List[dict]:
        cats = list(category_slugs)
        query = "SELECT a.* FROM apps a"
        params: Tuple[Any, ...] = ()
        if cats:
            query += (
                " WHERE a.id IN (SELECT ac.app_id FROM app_categories ac JOIN categories c ON c.id = ac.category_id"
                f" WHERE c.slug IN ({_placeholders(cats)}))"
            )
            params = tuple(cats)
        rows = await self.fetchall(query, params)
        return [dict(row) for row in rows]

    async def fetch_classes(self, app_slugs: Iterable[str] = ()) -> List[dict]:
        apps = list(app_slugs)
        query = "SELECT c.*, a.slug AS app_slug FROM classes c JOIN apps a ON a.id = c.app_id"
        params: Tuple[Any, ...] = ()
        if apps:
            query += f" WHERE a.slug IN ({_placeholders(apps)})"
            params = tuple(apps)
        rows = await self.fetchall(query, params)
        return [dict(row) for row in rows]

    async def fetch_methods(
        self,
        app_slugs: Iterable[str] = (),
        class_slugs: Iterable[str] = (),
        method_slugs: Iterable[str] = (),
    ) -> List[dict]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, values in (("a.slug", list(app_slugs)), ("c.slug", list(class_slugs)), ("m.slug", list(method_slugs))):
            if values:
                clauses.append(f"{column} IN ({_placeholders(values)})")
                params.extend(values)
        query = (
            "SELECT m.*, c.slug AS class_slug, c.name AS class_name, c.description AS class_description, "
            "a.slug AS app_slug, a.name AS app_name, a.description AS app_description "
            "FROM methods m JOIN classes c ON c.id = m.class_id JOIN apps a ON a.id = c.app_id"
        )
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await self.fetchall(query, tuple(params))
        return [dict(row) for row in rows]
