import seed
from relay.db import models


def test_seed_prints_demo_organization(db, monkeypatch, capsys):
    monkeypatch.setattr(
        "sys.argv", ["seed.py", "https://hooks.example.com/demo"]
    )

    seed.main()

    output = capsys.readouterr().out
    organization = db.query(models.Organization).filter_by(name="Demo Corp").one()
    assert f"Demo Corp (id {organization.id})" in output
    assert f"/in/{organization.token}" in output
    assert "Destination  : https://hooks.example.com/demo" in output
    assert organization.destination.secret in output
