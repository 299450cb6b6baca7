from pathlib import Path

from jobops.services.sponsors import SponsorRegister, normalize_company_name


def test_normalize_company_name_drops_legal_suffixes() -> None:
    assert normalize_company_name("Acme Widgets Ltd.") == "acme widgets"
    assert normalize_company_name("ACME WIDGETS (UK) LIMITED") == "acme widgets"
    assert normalize_company_name("Globex plc") == "globex"


def test_lookup_unknown_without_register() -> None:
    assert SponsorRegister().lookup("Acme") is None


def test_register_from_csv(tmp_path: Path) -> None:
    register_csv = tmp_path / "register.csv"
    register_csv.write_text(
        "Organisation Name,Town/City,Route\nAcme Widgets Limited,London,Skilled Worker\nGlobex PLC,Leeds,Skilled Worker\n",
        encoding="utf-8",
    )

    register = SponsorRegister.from_csv(register_csv)

    assert len(register) == 2
    assert register.lookup("Acme Widgets Ltd") is True
    assert register.lookup("Initech") is False
