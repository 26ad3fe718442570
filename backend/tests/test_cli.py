"""
CLI command tests via Flask's CLI runner.
"""

from datetime import date

from ims.services import catalog_service, invoice_service
from ims.services import sales_order_service as so_service
from ims.services import stock_ledger_service as ledger


class TestSystemCommands:

    def test_seed_demo_is_idempotent(self, runner, db_session):
        result = runner.invoke(args=["system", "seed-demo"])
        assert result.exit_code == 0, result.output
        assert "PASS Product WIDGET-1: 50 on hand at MAIN" in result.output

        widget = catalog_service.get_product_by_sku("WIDGET-1")
        assert ledger.get_total_quantity(widget.id) == 50

        again = runner.invoke(args=["system", "seed-demo"])
        assert again.exit_code == 0
        assert "already present" in again.output
        assert ledger.get_total_quantity(widget.id) == 50


class TestStockCommands:

    def test_show_unknown_sku_fails(self, runner, db_session):
        result = runner.invoke(args=["stock", "show", "--sku", "NOPE"])
        assert result.exit_code != 0
        assert "NOT_FOUND" in result.output

    def test_show_and_valuation(self, runner, stocked_product, warehouse):
        result = runner.invoke(args=["stock", "show", "--sku", "widget-1"])
        assert result.exit_code == 0, result.output
        assert "total: 100" in result.output
        assert "[NORMAL]" in result.output

        result = runner.invoke(args=["stock", "valuation"])
        assert "400.00" in result.output

    def test_warehouse_stats(self, runner, stocked_product, warehouse):
        result = runner.invoke(args=["stock", "stats", "--warehouse-id", str(warehouse.id)])
        assert result.exit_code == 0, result.output
        assert "products: 1, units: 100" in result.output
        assert "value: 400.00" in result.output

        missing = runner.invoke(args=["stock", "stats", "--warehouse-id", "9999"])
        assert missing.exit_code != 0
        assert "NOT_FOUND" in missing.output

    def test_low_stock_listing(self, runner, stocked_product, warehouse):
        ledger.remove_stock(stocked_product.id, warehouse.id, 93)

        result = runner.invoke(args=["stock", "low"])
        assert result.exit_code == 0
        assert "LOW" in result.output
        assert "WIDGET-1" in result.output

    def test_transfer(self, runner, stocked_product, warehouse, second_warehouse):
        result = runner.invoke(args=[
            "stock", "transfer",
            "--sku", "WIDGET-1",
            "--from", str(warehouse.id),
            "--to", str(second_warehouse.id),
            "--quantity", "15",
        ])
        assert result.exit_code == 0, result.output
        assert "source now 85" in result.output
        assert ledger.get_quantity(stocked_product.id, second_warehouse.id) == 15

    def test_transfer_insufficient(self, runner, stocked_product, warehouse, second_warehouse):
        result = runner.invoke(args=[
            "stock", "transfer",
            "--sku", "WIDGET-1",
            "--from", str(warehouse.id),
            "--to", str(second_warehouse.id),
            "--quantity", "500",
        ])
        assert result.exit_code != 0
        assert "INSUFFICIENT_STOCK" in result.output


class TestBillingCommands:

    def test_mark_overdue(self, runner, customer, warehouse, stocked_product):
        order = so_service.create_sales_order(
            customer.id, warehouse.id, items=[{"product_id": stocked_product.id, "quantity": 1}]
        )
        so_service.confirm_sales_order(order.id)
        invoice = invoice_service.generate_invoice(order.id, date(2025, 1, 1), date(2025, 1, 31))
        invoice_service.send_invoice(invoice.id)

        result = runner.invoke(args=["billing", "mark-overdue", "--as-of", "2025-02-15"])

        assert result.exit_code == 0, result.output
        assert invoice.invoice_number in result.output
        assert "PASS 1 invoice(s) marked overdue." in result.output
