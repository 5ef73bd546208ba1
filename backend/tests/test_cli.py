# Overview: Pytest coverage for the Flask CLI command groups.

from salecore.models import Location, Organization, StockBatch


class TestSystemCommands:
    def test_init_creates_org_and_location(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["system", "init", "--org", "Duka", "--org-code", "DK", "--tax-rate", "0.16"])

        assert result.exit_code == 0, result.output
        assert "Created organization" in result.output
        org = db_session.query(Organization).filter_by(code="DK").one()
        assert db_session.query(Location).filter_by(org_id=org.id).one().tax_rate_bps == 1600

        again = runner.invoke(args=["system", "init", "--org-code", "DK"])
        assert "Using existing organization" in again.output

    def test_init_rejects_bad_tax_rate(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["system", "init", "--org-code", "BAD", "--tax-rate", "1.5"])
        assert result.exit_code != 0


class TestStockCommands:
    def test_receive_and_available(self, app, db_session, org, location, product):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "stock", "receive",
            "--org-id", str(org.id), "--location-id", str(location.id), "--product-id", str(product.id),
            "--quantity", "10", "--unit-cost-cents", "250", "--expiry-date", "2099-01-31",
        ])
        assert result.exit_code == 0, result.output
        assert db_session.query(StockBatch).one().quantity == 10

        result = runner.invoke(args=[
            "stock", "available",
            "--org-id", str(org.id), "--location-id", str(location.id), "--product-id", str(product.id),
        ])
        assert "Available: 10" in result.output

    def test_receive_failure_exits_non_zero(self, app, db_session, org, location, product):
        result = app.test_cli_runner().invoke(args=[
            "stock", "receive",
            "--org-id", str(org.id), "--location-id", str(location.id), "--product-id", str(product.id),
            "--quantity", "0", "--unit-cost-cents", "250",
        ])
        assert result.exit_code == 1
        assert "FAIL" in result.output


class TestPaymentCommands:
    def test_expire_stale_with_nothing_pending(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["payments", "expire-stale"])
        assert result.exit_code == 0
        assert "Expired 0 payment(s)" in result.output
