"""Shared test doubles: a raw-sql seeder and fake collaborators."""

import sqlite3

from flags_gateway.errors import FLAGS_E_IDENTITY_PROVIDER, UpstreamError


class Seeder:
    """Writes dashboard-side rows straight into the sqlite file."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _exec(self, sql, params=()):
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                cur = conn.execute(sql, params)
            return cur.lastrowid
        finally:
            conn.close()

    def project(self, project_id, enabled=True):
        return self._exec("INSERT INTO project (project_id, name, enabled) VALUES (?, ?, ?)", (project_id, project_id, int(enabled)))

    def agent(self, project_pk, agent_id, enabled=True, interval=60):
        return self._exec(
            "INSERT INTO agent (agent_id, project_id, name, enabled, interval) VALUES (?, ?, ?, ?, ?)",
            (agent_id, project_pk, agent_id, int(enabled), interval),
        )

    def environment(self, agent_pk, env_id, created_at="2024-01-01 00:00:00"):
        return self._exec(
            "INSERT INTO environment (env_id, agent_id, name, created_at) VALUES (?, ?, ?, ?)",
            (env_id, agent_pk, env_id, created_at),
        )

    def flag(self, agent_pk, env_pk, name, enabled, updated_at="2024-06-01 10:00:00"):
        return self._exec(
            "INSERT INTO flag (name, enabled, agent_id, environment_id, updated_at) VALUES (?, ?, ?, ?, ?)",
            (name, int(enabled), agent_pk, env_pk, updated_at),
        )

    def set_project_enabled(self, project_id, enabled):
        self._exec("UPDATE project SET enabled = ? WHERE project_id = ?", (int(enabled), project_id))

    def set_agent_enabled(self, agent_id, enabled):
        self._exec("UPDATE agent SET enabled = ? WHERE agent_id = ?", (int(enabled), agent_id))

    def secret_menu(self, env_pk, sequence_json, enabled=True, close_button=None, container=None, button=None):
        menu_pk = self._exec(
            "INSERT INTO environment_secret_menu (menu_id, environment_id, enabled, code) VALUES (?, ?, ?, ?)",
            (f"menu-{env_pk}", env_pk, int(enabled), sequence_json),
        )
        if close_button or container or button:
            self._exec(
                "INSERT INTO secret_menu_style (secret_menu_id, close_button, container, button) VALUES (?, ?, ?, ?)",
                (menu_pk, close_button, container, button),
            )
        return menu_pk


class FakeIdentityProvider:
    def __init__(self, users=(), fail=False):
        self.users = set(users)
        self.fail = fail
        self.lookups = []

    def get_user_by_external_id(self, subject):
        self.lookups.append(subject)
        if self.fail:
            raise UpstreamError(FLAGS_E_IDENTITY_PROVIDER, cause="dial tcp: lookup keycloak: no such host")
        if subject in self.users:
            return {"id": subject, "username": subject}
        return None


class RecordingStatsSink:
    def __init__(self):
        self.events = []

    def record_success(self, scope):
        self.events.append(("success", scope))

    def record_error(self, scope):
        self.events.append(("error", scope))
