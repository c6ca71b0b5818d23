import pytest

from importhub.db.models import CompanyAccount, Opportunity, PurchaseProduct
from importhub.domain.imports.importers.accounts import AccountImporter
from importhub.domain.imports.importers.opportunities import OpportunityImporter
from importhub.domain.imports.importers.products import ProductImporter


@pytest.fixture
def importer(session_factory, settings):
    return OpportunityImporter(session_factory, settings)


@pytest.fixture
def acme(session_factory, settings):
    result = AccountImporter(session_factory, settings).import_rows(
        [{"account_number": "ACC-1", "name": "Acme Corp"}]
    )
    return result.created_ids[0]


def test_opportunity_attaches_to_existing_account(importer, session_factory, acme):
    result = importer.import_rows([
        {"Opportunity Number": "OPP-1", "Customer": "acme corp", "Stage": "Proposal", "Revenue": "1,200.50"},
        {"opportunity_number": "OPP-2", "customer_name": "Other", "account_number": "ACC-1"},
    ])

    assert result.created == 2
    assert result.failed == 0
    with session_factory() as session:
        opportunities = session.query(Opportunity).order_by(Opportunity.opportunity_number).all()
        assert [opp.account_id for opp in opportunities] == [acme, acme]
        assert opportunities[0].opp_stage == "Proposal"
        assert opportunities[0].booked_gross_revenue == pytest.approx(1200.5)
        assert opportunities[1].booked_gross_revenue == 0


def test_missing_account_fails_row(importer, session_factory):
    result = importer.import_rows([{"opportunity_number": "OPP-9", "customer_name": "Nobody Inc"}])

    assert result.failed == 1
    assert result.errors[0].message == "Account not found for opportunity"
    assert result.errors[0].row == 1
    with session_factory() as session:
        assert session.query(Opportunity).count() == 0
        assert session.query(CompanyAccount).count() == 0


def test_create_missing_accounts(importer, session_factory):
    result = importer.import_rows(
        [
            {"opportunity_number": "OPP-1", "customer_name": "New Co"},
            {"opportunity_number": "OPP-2", "customer_name": "New Co"},
        ],
        {"create_missing_accounts": True},
    )

    assert result.created == 2
    assert result.stats["accounts_created"] == 1
    assert len(result.related_created_ids["accounts"]) == 1
    with session_factory() as session:
        accounts = session.query(CompanyAccount).all()
        assert len(accounts) == 1
        assert accounts[0].name == "New Co"
        assert accounts[0].account_number.startswith("ACC-")
        assert {opp.account_id for opp in session.query(Opportunity)} == {accounts[0].id}


def test_customer_name_falls_back_to_account_name(importer, acme):
    result = importer.import_rows([
        {"opportunity_number": "OPP-3", "account_name": "Acme Corp"},
        {"opportunity_number": "OPP-4"},
        {"customer_name": "Acme Corp"},
    ])

    assert result.created == 1
    assert [issue.message for issue in result.errors] == [
        "Customer name is required",
        "Opportunity number is required",
    ]


def test_link_products(importer, session_factory, settings, acme):
    ProductImporter(session_factory, settings).import_rows([{"item_number": "SKU-1", "cost": "10"}])

    result = importer.import_rows(
        [
            {"opportunity_number": "OPP-1", "customer_name": "Acme Corp", "item_number": "SKU-1", "quantity": "3"},
            {"opportunity_number": "OPP-2", "customer_name": "Acme Corp", "item_number": "SKU-404"},
        ],
        {"link_products": True},
    )

    assert result.created == 2
    assert result.stats["products_linked"] == 1
    assert [issue.message for issue in result.warnings] == ["Product SKU-404 not found; link skipped"]
    assert result.warnings[0].row == 2
    with session_factory() as session:
        links = session.query(PurchaseProduct).all()
        assert len(links) == 1
        assert links[0].quantity == 3


def test_update_existing_keeps_unspecified_values(importer, session_factory, acme):
    importer.import_rows([{"opportunity_number": "OPP-1", "customer_name": "Acme Corp", "stage": "Lead"}])
    result = importer.import_rows(
        [{"opportunity_number": "OPP-1", "customer_name": "Acme Corp", "pipeline": "500"}],
        {"update_existing": True},
    )

    assert result.updated == 1
    with session_factory() as session:
        opportunity = session.query(Opportunity).one()
        assert opportunity.opp_stage == "Lead"
        assert opportunity.pipeline_gross_revenue == 500
