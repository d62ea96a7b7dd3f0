import logging

import pytest

import onboardomatic as ob


def manifest(*rows):
    return ob.Manifest(["username,fullname,team,role", *rows])


def events(caplog):
    return [getattr(r, "event", None) for r in caplog.records if hasattr(r, "event")]


def test_ensure_group_creates_once(host, caplog):
    caplog.set_level(logging.INFO)
    assert ob.fncEnsureGroup(host, "backend") is True
    assert ob.fncEnsureGroup(host, "backend") is False
    assert host.group_exists("backend")
    assert events(caplog) == ["GroupCreated", "GroupAlreadyExists"]


def test_ensure_user_existing_is_warning_not_failure(host, caplog):
    caplog.set_level(logging.INFO)
    intent = ob.AccountIntent("alice", "Alice A", "backend", "dev")
    ob.fncEnsureGroup(host, "backend")
    assert ob.fncEnsureUser(host, intent) is True
    assert ob.fncEnsureUser(host, intent) is False
    warning = [r for r in caplog.records if getattr(r, "event", None) == "UserAlreadyExists"]
    assert warning and warning[0].levelno == logging.WARNING
    assert host.users["alice"]["comment"] == "Alice A"
    assert host.users["alice"]["groups"] == ["backend"]
    assert host.users["alice"]["shell"] == ob.DEFAULT_SHELL


def test_create_scenario(host, issuer):
    summary = ob.fncCreateUsers(host, manifest("alice,Alice A,backend,dev", "bob,Bob B,backend,lead"), issuer)

    assert summary.processed == 2 and summary.succeeded == 2 and summary.failed == 0
    assert host.group_exists("backend")
    assert host.list_group_members("backend") == ["alice", "bob"]
    for user in ("alice", "bob"):
        assert host.user_exists(user)
        assert host.dirs[f"/home/{user}"] == {"owner": user, "group": user, "mode": 0o700}
        assert host.dirs[f"/home/{user}/projects"] == {"owner": user, "group": user, "mode": 0o755}
        assert host.dirs[f"/projects/backend/{user}"] == {"owner": user, "group": "backend", "mode": 0o755}
        assert host.files[f"/home/{user}/.bashrc"]["owner"] == user
    assert host.dirs["/projects/backend/shared"] == {"owner": "root", "group": "backend", "mode": 0o2775}
    assert issuer.issued == ["alice", "bob"]
    assert host.expired == {"alice", "bob"}


def test_create_twice_is_idempotent(host, issuer):
    m = manifest("alice,Alice A,backend,dev", "bob,Bob B,backend,lead", "carol,Carol C,frontend,dev")
    ob.fncCreateUsers(host, m, issuer)
    first = host.snapshot()
    summary = ob.fncCreateUsers(host, m, issuer)
    assert summary.ok
    assert host.snapshot() == first
    assert issuer.issued == ["alice", "bob", "carol"]


def test_readme_is_overwritten_not_appended(host, issuer):
    m = manifest("alice,Alice A,backend,dev")
    ob.fncCreateUsers(host, m, issuer)
    readme = host.files["/projects/backend/alice/README.md"]["content"]
    ob.fncCreateUsers(host, m, issuer)
    assert host.files["/projects/backend/alice/README.md"]["content"] == readme
    assert readme.count("# alice's Team Project Directory") == 1
    assert host.files["/projects/backend/alice/README.md"]["group"] == "backend"


@pytest.mark.parametrize("rows", [
    ("alice,Alice A,backend,dev", "bob,Bob B,backend,lead"),
    ("bob,Bob B,backend,lead", "alice,Alice A,backend,dev"),
])
def test_shared_dir_converges_regardless_of_order(host, issuer, rows):
    ob.fncCreateUsers(host, manifest(*rows), issuer)
    assert host.dirs["/projects/backend/shared"] == {"owner": "root", "group": "backend", "mode": 0o2775}


def test_drifted_permissions_self_heal(host, issuer):
    m = manifest("alice,Alice A,backend,dev")
    ob.fncCreateUsers(host, m, issuer)
    host.dirs["/projects/backend/shared"].update(mode=0o700, group="root")
    host.dirs["/projects/backend/alice"]["mode"] = 0o777
    host.dirs["/home/alice/projects"]["mode"] = 0o700
    ob.fncCreateUsers(host, m, issuer)
    assert host.dirs["/projects/backend/shared"] == {"owner": "root", "group": "backend", "mode": 0o2775}
    assert host.dirs["/projects/backend/alice"]["mode"] == 0o755
    assert host.dirs["/home/alice/projects"]["mode"] == 0o755


def test_existing_user_home_left_alone_but_dirs_provisioned(host, issuer):
    host.create_group("backend")
    host.create_user("alice", home="/home/alice", shell="/bin/zsh", comment="", groups=["backend"])
    host.dirs["/home/alice"]["mode"] = 0o750

    summary = ob.fncCreateUsers(host, manifest("alice,Alice A,backend,dev"), issuer)

    assert summary.succeeded == 1
    assert host.dirs["/home/alice"]["mode"] == 0o750
    assert "/home/alice/.bashrc" not in host.files
    assert host.dirs["/projects/backend/alice"]["mode"] == 0o755
    assert host.dirs["/projects/backend/shared"]["mode"] == 0o2775
    assert issuer.issued == []


def test_skip_lines_give_same_state(make_host, issuer):
    noisy, clean = make_host(), make_host()
    ob.fncCreateUsers(noisy, ob.Manifest([
        "username,fullname,team,role", "", "alice,Alice A,backend,dev",
        "username,fullname,team,role", "bob,Bob B,backend,lead", "",
    ]), issuer)
    ob.fncCreateUsers(clean, manifest("alice,Alice A,backend,dev", "bob,Bob B,backend,lead"), issuer)
    assert noisy.snapshot() == clean.snapshot()


def test_failed_record_does_not_stop_batch(host, issuer, caplog):
    caplog.set_level(logging.INFO)
    host.fail_create.add("bob")
    summary = ob.fncCreateUsers(
        host, manifest("alice,Alice A,backend,dev", "bob,Bob B,backend,lead", "carol,Carol C,ops,dev"), issuer)

    assert summary.processed == 3
    assert summary.succeeded == 2
    assert summary.failed == 1
    assert summary.failures[0][0] == "bob"
    assert "useradd failed for bob" in summary.failures[0][1]
    assert host.user_exists("carol")
    assert not summary.ok
    assert "RecordFailed" in events(caplog)


@pytest.mark.parametrize("row", [
    "root,Root,backend,dev",
    "Alice,Alice A,backend,dev",
    "alice,Alice A,,dev",
    "alice,Alice A,../etc,dev",
])
def test_unsafe_rows_are_refused(host, issuer, row):
    summary = ob.fncCreateUsers(host, manifest(row), issuer)
    assert summary.failed == 1
    assert host.dirs == {}


def test_random_issuer_sets_and_expires(host):
    host.create_group("backend")
    host.create_user("alice", home="/home/alice", shell="/bin/bash", comment="", groups=["backend"])
    hidden = ob.RandomCredentialIssuer(length=30, reveal=False)
    assert hidden.issue(host, "alice") is None
    assert len(host.passwords["alice"]) == 30
    assert "alice" in host.expired

    shown = ob.RandomCredentialIssuer(length=16, reveal=True)
    secret = shown.issue(host, "alice")
    assert secret == host.passwords["alice"]


def test_generated_passwords_differ():
    assert ob.fncGeneratePassword(24) != ob.fncGeneratePassword(24)


def test_bashrc_is_templated():
    text = ob.fncRenderBashrc("alice", "backend")
    assert "Welcome alice!" in text
    assert "alias shared='cd /projects/backend/shared'" in text
    assert "{{" not in text


def test_existing_account_without_private_group_still_gets_dirs(host, issuer):
    host.create_group("backend")
    host.add_account("alice", primary="backend")

    summary = ob.fncCreateUsers(host, manifest("alice,Alice A,backend,dev"), issuer)

    assert summary.ok and summary.succeeded == 1
    assert not host.group_exists("alice")
    assert host.dirs["/home/alice/projects"] == {"owner": "alice", "group": "backend", "mode": 0o755}
    assert host.files["/home/alice/projects/README.md"]["group"] == "backend"
    assert host.dirs["/projects/backend/alice"] == {"owner": "alice", "group": "backend", "mode": 0o755}
    assert host.dirs["/projects/backend/shared"]["mode"] == 0o2775


def test_username_matching_a_group_is_refused_clearly(host, issuer):
    summary = ob.fncCreateUsers(host, manifest("backend,Back End,backend,dev"), issuer)

    assert summary.failed == 1
    assert "already exists" in summary.failures[0][1]
    assert not host.user_exists("backend")
    assert issuer.issued == []
