import logging
import os
import stat
from urllib.parse import quote

import pytest
import yaml
from pydantic import SecretStr

from hostprep.config.models import HostPrepConfig, MaasConfig
from hostprep.credentials.sink import load_credentials
from hostprep.engine.report import OK, PENDING, PLANNED, SKIPPED
from hostprep.engine.runner import StepRunner
from hostprep.errors import PermissionDenied, StepFailure, ValidationError
from hostprep.playbooks import maas
from hostprep.secrets.models import SecretSource

from conftest import make_toolkit


def _cfg(host, **kwargs) -> HostPrepConfig:
    kwargs.setdefault("admin_email", "ops@example.test")
    return HostPrepConfig(maas=MaasConfig(postgres_conf_root=str(host.pg_conf_root), **kwargs))


@pytest.fixture
def ops(host):
    return host.add_user("ops")


def _run(tk):
    maas.preflight(tk)
    playbook = maas.build(tk)
    try:
        return playbook, StepRunner().run(playbook.steps)
    finally:
        playbook.wipe_secrets()


def _creds(host):
    return host.root / "home" / "ops" / "maas" / "maas.creds"


def test_fresh_install_walks_every_state(host, ops):
    tk = make_toolkit(host, _cfg(host))

    playbook, report = _run(tk)

    assert [o.name for o in report.outcomes] == maas.STATES
    assert {o.status for o in report.outcomes} == {OK}
    assert {"snapd", "postgresql-16"} <= host.packages
    assert "maasuser" in host.roles and "maasdb" in host.databases
    assert "maas" in host.snaps
    assert "admin" in host.maas_admins

    conf = host.pg_conf_root / "16" / "main"
    assert "listen_addresses = 'localhost'" in (conf / "postgresql.conf").read_text().splitlines()
    assert "host    maasdb    maasuser    127.0.0.1/32    md5" in (conf / "pg_hba.conf").read_text()

    creds = _creds(host)
    assert stat.S_IMODE(os.stat(creds).st_mode) == 0o600
    assert stat.S_IMODE(os.stat(creds.parent).st_mode) == 0o700
    assert not ops.is_root
    assert (os.stat(creds).st_uid, os.stat(creds).st_gid) == (ops.uid, ops.gid)
    values = load_credentials(creds)
    assert values["MAAS_URL"] == "http://node1.example.test:5240/MAAS"
    assert values["MAAS_CHANNEL"] == "3.6/stable"
    assert values["DB_USER"] == "maasuser"
    assert values["MAAS_ADMIN_EMAIL"] == "ops@example.test"
    assert len(values["DB_PASS"]) >= 32

    init = next(c for c in tk.runner.calls if c[:2] == ["maas", "init"])
    uri = init[init.index("--database-uri") + 1]
    assert uri == f"postgres://maasuser:{quote(values['DB_PASS'], safe='')}@localhost/maasdb"
    assert ["snap", "install", "--channel=3.6/stable", "maas"] in tk.runner.mutations
    assert "Web UI: http://node1.example.test:5240/MAAS" in playbook.epilogue()


def test_rerun_reuses_recorded_secrets_and_changes_nothing(host, ops):
    _run(make_toolkit(host, _cfg(host)))
    before = _creds(host).read_text()

    tk = make_toolkit(host, _cfg(host))
    _, report = _run(tk)

    assert {o.status for o in report.outcomes} == {SKIPPED}
    assert tk.runner.mutations == []
    assert _creds(host).read_text() == before


def test_interrupted_install_resumes_with_the_same_db_password(host, ops):
    host.failing.add("createadmin")

    with pytest.raises(StepFailure) as ei:
        _run(make_toolkit(host, _cfg(host)))

    failure = ei.value
    assert failure.step_name == maas.ADMIN_CREATED
    assert failure.category == "action-failed"
    assert [o.status for o in failure.report.outcomes] == [OK, OK, OK, OK, OK, "FAILED", PENDING]
    assert not _creds(host).exists()
    sql_before = list(host.sql)

    host.failing.clear()
    tk = make_toolkit(host, _cfg(host))
    _, report = _run(tk)

    status = {o.name: o.status for o in report.outcomes}
    assert status[maas.DATABASE_PROVISIONED] == SKIPPED
    assert status[maas.SERVICE_INITIALIZED] == SKIPPED
    assert status[maas.ADMIN_CREATED] == OK
    assert status[maas.CREDENTIALS_PERSISTED] == OK
    assert host.sql == sql_before
    in_use = yaml.safe_load(host.regiond_conf.read_text())["database_pass"]
    assert load_credentials(_creds(host))["DB_PASS"] == in_use


def test_configured_passwords_are_used_and_applied(host, ops):
    cfg = _cfg(
        host,
        db_password=SecretStr("Configured-DB-Password-0123456789"),
        admin_password=SecretStr("Configured-Admin-Password-0123456789"),
    )

    _run(make_toolkit(host, cfg))

    values = load_credentials(_creds(host))
    assert values["DB_PASS"] == "Configured-DB-Password-0123456789"
    assert values["MAAS_ADMIN_PASS"] == "Configured-Admin-Password-0123456789"
    assert any("Configured-DB-Password-0123456789" in s for s in host.sql)


def test_rerun_with_configured_db_password_changes_nothing(host, ops):
    cfg = _cfg(host, db_password=SecretStr("Configured-DB-Password-0123456789"))
    _run(make_toolkit(host, cfg))
    sql_before = list(host.sql)

    tk = make_toolkit(host, cfg)
    _, report = _run(tk)

    assert {o.status for o in report.outcomes} == {SKIPPED}
    assert tk.runner.mutations == []
    assert host.sql == sql_before


def test_changed_db_password_is_applied_again(host, ops):
    _run(make_toolkit(host, _cfg(host, db_password=SecretStr("First-DB-Password-0123456789"))))

    tk = make_toolkit(host, _cfg(host, db_password=SecretStr("Second-DB-Password-0123456789")))
    _, report = _run(tk)

    status = {o.name: o.status for o in report.outcomes}
    assert status[maas.DATABASE_PROVISIONED] == OK
    assert "Second-DB-Password-0123456789" in host.sql[-1]
    assert load_credentials(_creds(host))["DB_PASS"] == "Second-DB-Password-0123456789"


def test_equivalent_hba_rule_is_not_appended_again(host, ops):
    _run(make_toolkit(host, _cfg(host)))
    hba = host.pg_conf_root / "16" / "main" / "pg_hba.conf"
    rule = "host    maasdb    maasuser    127.0.0.1/32    md5"
    hba.write_text(hba.read_text().replace(rule, "host maasdb maasuser 127.0.0.1/32 md5"))
    before = hba.read_text()

    tk = make_toolkit(host, _cfg(host))
    _, report = _run(tk)

    assert {o.status for o in report.outcomes} == {SKIPPED}
    assert hba.read_text() == before


def test_secrets_never_reach_the_log(host, ops, caplog):
    with caplog.at_level(logging.DEBUG, logger="hostprep"):
        _run(make_toolkit(host, _cfg(host)))

    values = load_credentials(_creds(host))
    for key in ("DB_PASS", "MAAS_ADMIN_PASS"):
        assert values[key] not in caplog.text
        assert quote(values[key], safe="") not in caplog.text


def test_secret_acquisition_order(host, ops):
    tk = make_toolkit(host, _cfg(host))

    generated = maas._acquire(tk, None, {}, "DB_PASS")
    assert generated.source is SecretSource.GENERATED

    from_record = maas._acquire(tk, None, {"DB_PASS": "recorded"}, "DB_PASS", "in-use")
    assert (from_record.reveal(), from_record.source) == ("recorded", SecretSource.RECOVERED)

    in_use = maas._acquire(tk, None, {}, "DB_PASS", "in-use")
    assert (in_use.reveal(), in_use.source) == ("in-use", SecretSource.RECOVERED)

    configured = maas._acquire(tk, SecretStr("explicit"), {"DB_PASS": "recorded"}, "DB_PASS")
    assert (configured.reveal(), configured.source) == ("explicit", SecretSource.CONFIGURED)


def test_postgresql_meta_package_when_versioned_one_is_unavailable(host, ops):
    host.available.discard("postgresql-16")
    tk = make_toolkit(host, _cfg(host))

    _run(tk)

    assert "postgresql" in host.packages
    assert "postgresql-16" not in host.packages


def test_dry_run_plans_every_state(host, ops):
    tk = make_toolkit(host, _cfg(host), dry_run=True)
    maas.preflight(tk)

    report = StepRunner(dry_run=True).run(maas.build(tk).steps)

    assert {o.status for o in report.outcomes} == {PLANNED}
    assert tk.runner.mutations == []
    assert not _creds(host).exists()


@pytest.mark.parametrize("email", ["", "   ", "not-an-email"])
def test_admin_email_is_required(host, ops, email):
    with pytest.raises(ValidationError):
        maas.preflight(make_toolkit(host, _cfg(host, admin_email=email)))


def test_credentials_are_never_owned_by_root(host):
    with pytest.raises(PermissionDenied):
        maas.preflight(make_toolkit(host, _cfg(host, creds_owner="root")))


def test_explicit_credentials_owner(host):
    host.add_user("maasadmin")
    tk = make_toolkit(host, _cfg(host, creds_owner="maasadmin"), environ={})

    _run(tk)

    assert (host.root / "home" / "maasadmin" / "maas" / "maas.creds").is_file()


def test_requires_root(host, ops):
    with pytest.raises(PermissionDenied):
        maas.preflight(make_toolkit(host, _cfg(host), root=False))


def test_sql_literal_escapes_quotes():
    assert maas.sql_literal("it's") == "'it''s'"
