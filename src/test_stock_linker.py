import unittest
from decimal import Decimal
from uuid import uuid4

from rxquote.models.catalog import DEFAULT_UNIT_TYPE, StockItem
from rxquote.models.prescription import SuggestedItem
from rxquote.services.stock_linker import find_stock_match, link_suggested_items, search_stock


def _stock(name: str, price: str = "1000", qty: int = 10, unit_type: str = "Caixa") -> StockItem:
    return StockItem(
        id=uuid4(),
        pharmacy_id="FARM-01",
        name=name,
        unit_price=Decimal(price),
        quantity_on_hand=qty,
        unit_type=unit_type,
    )


class LinkSuggestedItemsTests(unittest.TestCase):
    def setUp(self):
        self.coartem_12 = _stock("Coartem 12 comprimidos", "2000", 4)
        self.coartem_6 = _stock("Coartem 6 comprimidos (prateleira B)", "1500", 10)
        self.stock = [self.coartem_12, self.coartem_6]

    def test_matched_line_is_prefilled_from_stock(self):
        lines = link_suggested_items([SuggestedItem(raw_name="Coartem 6", quantity=2)], self.stock)

        self.assertEqual(len(lines), 1)
        line = lines[0]
        self.assertTrue(line.is_matched)
        self.assertEqual(line.linked_stock_item_id, self.coartem_6.id)
        self.assertEqual(line.name, "Coartem 6 comprimidos")
        self.assertEqual(line.unit_price, Decimal("1500"))
        self.assertEqual(line.unit_type, "Caixa")
        self.assertEqual(line.stock_snapshot, 10)
        self.assertEqual(line.quantity, 2)

    def test_unmatched_line_keeps_ai_name_at_zero_price(self):
        lines = link_suggested_items([SuggestedItem(raw_name="Xarope caseiro")], self.stock)

        line = lines[0]
        self.assertFalse(line.is_matched)
        self.assertIsNone(line.linked_stock_item_id)
        self.assertEqual(line.name, "Xarope caseiro")
        self.assertEqual(line.unit_price, Decimal("0"))
        self.assertEqual(line.unit_type, DEFAULT_UNIT_TYPE)
        self.assertEqual(line.quantity, 1)

    def test_lines_follow_input_order(self):
        items = [SuggestedItem(raw_name="Dipirona"), SuggestedItem(raw_name="Coartem 12")]
        lines = link_suggested_items(items, self.stock)
        self.assertEqual([line.is_matched for line in lines], [False, True])
        self.assertEqual(lines[1].linked_stock_item_id, self.coartem_12.id)

    def test_empty_inputs(self):
        self.assertEqual(link_suggested_items([], self.stock), [])
        lines = link_suggested_items([SuggestedItem(raw_name="Coartem 6")], [])
        self.assertFalse(lines[0].is_matched)

    def test_find_stock_match_threshold(self):
        self.assertIsNone(find_stock_match("Coartem gotas", [_stock("Coartem 80 mg")]))


class SearchStockTests(unittest.TestCase):
    def test_substring_search_is_normalized(self):
        stock = [_stock("Dipirona Sódica 500mg"), _stock("Paracetamol 500 mg"), _stock("Dipirona gotas")]
        names = [i.name for i in search_stock("DIPIRONA", stock)]
        self.assertEqual(names, ["Dipirona Sódica 500mg", "Dipirona gotas"])

    def test_short_terms_and_limit(self):
        stock = [_stock(f"Produto {i}") for i in range(10)]
        self.assertEqual(search_stock("p", stock), [])
        self.assertEqual(len(search_stock("produto", stock, limit=3)), 3)


if __name__ == "__main__":
    unittest.main()
