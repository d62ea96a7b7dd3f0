import copy
import os

import pytest

import onboardomatic as ob


class FakeHost:
    """In-memory stand-in for LinuxHost: users, groups, dirs and files in dicts."""

    def __init__(self):
        self.users = {"root": {"home": "/root", "shell": "/bin/bash", "comment": "root", "groups": [], "primary": "root"}}
        self.groups = {"root": set()}
        self.dirs = {}
        self.files = {}
        self.passwords = {}
        self.expired = set()
        self.fail_create = set()
        self.fail_delete = set()

    # --- groups ---
    def group_exists(self, name):
        return name in self.groups

    def create_group(self, name):
        if name in self.groups:
            raise ob.MutationFailure("groupadd", name, f"group '{name}' already exists")
        self.groups[name] = set()

    def delete_group(self, name):
        if name not in self.groups:
            raise ob.MutationFailure("groupdel", name, f"group '{name}' does not exist")
        del self.groups[name]

    def list_group_members(self, name):
        return sorted(self.groups.get(name, ()))

    # --- users ---
    def user_exists(self, name):
        return name in self.users

    def create_user(self, name, home, shell, comment, groups):
        if name in self.fail_create:
            raise ob.MutationFailure("useradd", name, "cannot lock /etc/passwd")
        if name in self.users:
            raise ob.MutationFailure("useradd", name, f"user '{name}' already exists")
        for g in groups:
            if g not in self.groups:
                raise ob.MutationFailure("useradd", name, f"group '{g}' does not exist")
        self.users[name] = {"home": home, "shell": shell, "comment": comment, "groups": list(groups), "primary": name}
        self.groups.setdefault(name, set())
        for g in groups:
            self.groups[g].add(name)
        self.ensure_dir(home)
        self.dirs[home].update(owner=name, group=name, mode=0o755)

    def add_account(self, name, primary, home=None, groups=()):
        """An account made outside onboardomatic, e.g. `useradd -m -g <team>`."""
        home = home or f"/home/{name}"
        self.users[name] = {"home": home, "shell": "/bin/bash", "comment": "", "groups": list(groups), "primary": primary}
        for g in groups:
            self.groups[g].add(name)
        self.ensure_dir(home)
        self.dirs[home].update(owner=name, group=primary, mode=0o755)

    def primary_group(self, name):
        if name not in self.users:
            raise ob.MutationFailure("id", name, f"no such user: {name}")
        return self.users[name]["primary"]

    def delete_user(self, name):
        if name in self.fail_delete:
            raise ob.MutationFailure("userdel", name, f"user {name} is currently used by process 4242")
        info = self.users.pop(name)
        for members in self.groups.values():
            members.discard(name)
        if name in self.groups and not self.groups[name]:
            del self.groups[name]
        if self.path_exists(info["home"]):
            self.remove_tree(info["home"])

    def set_password(self, name, secret):
        self.passwords[name] = secret

    def expire_password(self, name):
        self.expired.add(name)

    # --- filesystem ---
    def _node(self, path):
        node = self.dirs.get(path) or self.files.get(path)
        if node is None:
            raise ob.MutationFailure("stat", path, "No such file or directory")
        return node

    def ensure_dir(self, path):
        p = path
        while p not in ("", "/") and p not in self.dirs:
            self.dirs[p] = {"owner": "root", "group": "root", "mode": 0o755}
            p = os.path.dirname(p)

    def set_owner(self, path, user, group):
        node = self._node(path)
        if user not in self.users:
            raise ob.MutationFailure("chown", path, f"no such user: {user}")
        if group not in self.groups:
            raise ob.MutationFailure("chown", path, f"no such group: {group}")
        node.update(owner=user, group=group)

    def set_mode(self, path, mode):
        self._node(path)["mode"] = mode

    def list_children(self, path):
        prefix = path.rstrip("/") + "/"
        names = {p[len(prefix):].split("/")[0] for p in list(self.dirs) + list(self.files) if p.startswith(prefix)}
        return sorted(names)

    def remove_tree(self, path):
        prefix = path.rstrip("/") + "/"
        for store in (self.dirs, self.files):
            for p in [p for p in store if p == path or p.startswith(prefix)]:
                del store[p]

    def write_file(self, path, content):
        if os.path.dirname(path) not in self.dirs:
            raise ob.MutationFailure("write", path, "No such file or directory")
        node = self.files.setdefault(path, {"owner": "root", "group": "root", "mode": 0o644})
        node["content"] = content

    def path_exists(self, path):
        return path in self.dirs or path in self.files

    def snapshot(self):
        return copy.deepcopy((self.users, self.groups, self.dirs, self.files))


class FakeIssuer:
    def __init__(self):
        self.issued = []

    def issue(self, host, username):
        self.issued.append(username)
        host.set_password(username, "placeholder")
        host.expire_password(username)
        return None


def write_manifest(tmp_path, *rows, header=ob.HEADER_LINE, name="users.csv"):
    path = tmp_path / name
    path.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def manifest_file(tmp_path):
    def _write(*rows, header=ob.HEADER_LINE, name="users.csv"):
        return write_manifest(tmp_path, *rows, header=header, name=name)
    return _write


@pytest.fixture
def make_host():
    return FakeHost


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def no_preflight(monkeypatch):
    """Let fncMain run without root, real log files, the lock or /etc backups."""
    monkeypatch.setattr(ob, "fncAdminCheck", lambda: None)
    monkeypatch.setattr(ob, "fncSetupLogging", lambda: None)
    monkeypatch.setattr(ob, "fncAcquireLock", lambda: None)
    monkeypatch.setattr(ob, "fncBackupIdentityFiles", lambda: None)
