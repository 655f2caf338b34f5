"""주문 접수 보조 함수 단위 테스트"""

from datetime import date
from decimal import Decimal

import pytest

from otabridge.models import DailyRate
from otabridge.services.ota_order_intake import CtripOrderIntake, OrderIntake, parse_plu

DAY = date(2026, 11, 1)


def _rate(day, available=5, closed=False):
    return DailyRate(
        rate_date=day,
        sale_price=Decimal("300.00"),
        settlement_price=Decimal("260.00"),
        available_quantity=available,
        is_closed=closed,
    )


@pytest.mark.unit
class TestParsePlu:
    def test_full(self):
        assert parse_plu("H001|STD|P001") == ("H001", "STD", "P001")

    def test_product_only(self):
        assert parse_plu("P001") == (None, None, "P001")
        assert parse_plu("STD|P001") == (None, None, "P001")

    def test_blank_parts(self):
        assert parse_plu(" |STD| P001 ") == (None, "STD", "P001")


@pytest.mark.unit
class TestCheckStock:
    def test_enough(self):
        rates = [_rate(DAY), _rate(date(2026, 11, 2))]
        assert OrderIntake.check_stock(rates, DAY, 2, 5) is None

    def test_missing_day(self):
        assert OrderIntake.check_stock([_rate(DAY)], DAY, 2, 1) == "库存不足。日期：2026-11-02，没有库存记录"

    def test_closed(self):
        assert OrderIntake.check_stock([_rate(DAY, closed=True)], DAY, 1, 1) == "库存不足。日期：2026-11-01，库存已关闭"

    def test_short(self):
        message = OrderIntake.check_stock([_rate(DAY, available=1)], DAY, 1, 2)
        assert message == "库存不足。日期：2026-11-01，实际可用库存：1，需要：2"


@pytest.mark.unit
class TestCtripBookingRequest:
    def test_items_format(self):
        request = CtripOrderIntake.booking_request(
            {
                "otaOrderId": "CT1",
                "items": [
                    {
                        "PLU": "H001|STD|P001",
                        "useStartDate": "2026-11-01",
                        "useEndDate": "2026-11-03",
                        "quantity": 2,
                        "salePrice": 280,
                        "passengers": [{"name": "张 三", "cardNo": "1101", "cardType": 1}],
                    }
                ],
                "contacts": [{"name": "张 三", "mobile": "138"}],
            }
        )
        assert (request.hotel_code, request.room_type_code, request.product_code) == ("H001", "STD", "P001")
        assert (request.start, request.end, request.quantity, request.sale_price) == ("2026-11-01", "2026-11-03", 2, 280)
        assert request.guests == [{"name": "张 三", "idCode": "1101", "cardType": "1"}]
        assert request.contact == {"name": "张 三", "mobile": "138"}

    def test_flat_format(self):
        request = CtripOrderIntake.booking_request(
            {"orderId": "CT2", "supplierOptionId": "P001", "useDate": "2026-11-01", "travelers": [{"name": "李 四"}]}
        )
        assert request.ota_order_no == "CT2"
        assert (request.hotel_code, request.product_code) == (None, "P001")
        assert request.guests == [{"name": "李 四", "idCode": "", "cardType": "1"}]
