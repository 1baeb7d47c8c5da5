"""Tests for medication-name normalization and the three match policies."""
import unittest

import polars as pl

from rxquote.services.normalizer import (
    MatchPolicy,
    best_match,
    format_for_customer,
    is_match,
    normalize,
    normalize_dataframe_column,
    normalize_series,
    rank,
    score,
    tokenize,
)


class NormalizeTests(unittest.TestCase):
    def test_lowercase_and_accent_strip(self):
        self.assertEqual(normalize("DIPIRONA SÓDICA"), "dipirona sodica")

    def test_digit_letter_boundary_inserted(self):
        self.assertEqual(normalize("500MG"), "500 mg")

    def test_letter_digit_boundary_inserted(self):
        self.assertEqual(normalize("IBUPROFENO400MG"), "ibuprofeno 400 mg")

    def test_punctuation_and_spacing_collapsed(self):
        self.assertEqual(normalize("  Paracetamol,   500 mg / cx  "), "paracetamol 500 mg cx")

    def test_none_and_blank_return_empty(self):
        self.assertEqual(normalize(None), "")
        self.assertEqual(normalize("   "), "")

    def test_keyword_tokens_drop_short_words_and_stopwords(self):
        tokens = tokenize(normalize("Amoxicilina 500 mg para uso oral"), keywords=True)
        self.assertEqual(tokens, ["amoxicilina", "500", "oral"])

    def test_plain_tokens_keep_everything(self):
        self.assertEqual(tokenize("coartem 6 mg"), ["coartem", "6", "mg"])

    def test_format_for_customer_drops_parenthesised_notes(self):
        self.assertEqual(format_for_customer("Dolex 500mg (cx 20 - prateleira 3)"), "Dolex 500mg")


class StrictPolicyTests(unittest.TestCase):
    def test_identity(self):
        self.assertEqual(score("Coartem 6", "Coartem 6", MatchPolicy.STRICT), 1.0)

    def test_case_and_spacing_insensitive(self):
        self.assertTrue(is_match("Panadol 500mg", "PANADOL 500 MG", MatchPolicy.STRICT))

    def test_diacritic_insensitive(self):
        self.assertTrue(is_match("Dipirona Sódica", "DIPIRONA SODICA", MatchPolicy.STRICT))

    def test_containment_either_direction(self):
        self.assertTrue(is_match("Panadol", "Panadol Extra", MatchPolicy.STRICT))
        self.assertTrue(is_match("Panadol Extra", "Panadol", MatchPolicy.STRICT))

    def test_unrelated_names_do_not_match(self):
        self.assertEqual(score("Panadol", "Ibuprofeno", MatchPolicy.STRICT), 0.0)

    def test_symmetric(self):
        pairs = [("Panadol", "Panadol Extra"), ("Coartem 6", "Coartem 12"), ("Amoxil", "amoxicilina")]
        for a, b in pairs:
            self.assertEqual(score(a, b, MatchPolicy.STRICT), score(b, a, MatchPolicy.STRICT))

    def test_empty_input_never_matches(self):
        self.assertEqual(score("", "Panadol", MatchPolicy.STRICT), 0.0)
        self.assertEqual(score("   ", "   ", MatchPolicy.STRICT), 0.0)
        self.assertFalse(is_match(None, "Panadol", MatchPolicy.STRICT))


class RankedPolicyTests(unittest.TestCase):
    def test_identity(self):
        self.assertEqual(score("Amoxicilina 500mg", "Amoxicilina 500 mg", MatchPolicy.RANKED), 1.0)

    def test_containment_scores_point_eight(self):
        self.assertAlmostEqual(score("Panadol", "Panadol Extra", MatchPolicy.RANKED), 0.8)

    def test_containment_keeps_higher_jaccard(self):
        value = score("Vitamina C 500mg efervescente", "Vitamina C 500mg efervescente laranja", MatchPolicy.RANKED)
        self.assertAlmostEqual(value, 5 / 6)

    def test_jaccard_of_token_sets(self):
        value = score("Paracetamol 500mg comprimido", "Paracetamol 500mg xarope", MatchPolicy.RANKED)
        self.assertAlmostEqual(value, 3 / 5)
        self.assertTrue(is_match("Paracetamol 500mg comprimido", "Paracetamol 500mg xarope", MatchPolicy.RANKED))

    def test_below_threshold_rejected(self):
        self.assertFalse(is_match("Paracetamol 500", "Paracetamol 750 mg", MatchPolicy.RANKED))

    def test_symmetric(self):
        pairs = [
            ("Paracetamol 500mg comprimido", "Paracetamol 500mg xarope"),
            ("Panadol", "Panadol Extra"),
            ("Ibuprofeno", "Dipirona"),
        ]
        for a, b in pairs:
            self.assertEqual(score(a, b, MatchPolicy.RANKED), score(b, a, MatchPolicy.RANKED))

    def test_rank_orders_by_score_and_keeps_ties_in_order(self):
        catalog = ["Paracetamol 500 mg", "Ibuprofeno 400 mg", "Paracetamol 500", "Paracetamol 500 gotas"]
        ranked = rank("Paracetamol 500", catalog, policy=MatchPolicy.RANKED)
        self.assertEqual(
            [name for name, _ in ranked],
            ["Paracetamol 500", "Paracetamol 500 mg", "Paracetamol 500 gotas"],
        )

    def test_rank_limit(self):
        catalog = ["Paracetamol 500 mg", "Paracetamol 500", "Paracetamol 500 gotas"]
        self.assertEqual(len(rank("Paracetamol 500", catalog, limit=2)), 2)
        self.assertEqual(rank("Paracetamol 500", catalog, limit=0), [])


class NumericAwarePolicyTests(unittest.TestCase):
    def test_matching_dosage_scores_strictly_higher(self):
        same_dose = score("Coartem 6", "Coartem 6 comprimidos", MatchPolicy.NUMERIC_AWARE)
        other_dose = score("Coartem 6", "Coartem 12 comprimidos", MatchPolicy.NUMERIC_AWARE)
        self.assertGreater(same_dose, other_dose)

    def test_additive_weights(self):
        # exact 20 + contains 10 + shared keyword "coartem" 3 + shared digits "6" 5
        self.assertEqual(score("Coartem 6", "COARTEM 6", MatchPolicy.NUMERIC_AWARE), 38.0)
        # contains 10 + "coartem" 3 + "6" 5
        self.assertEqual(score("Coartem 6", "Coartem 6 comprimidos", MatchPolicy.NUMERIC_AWARE), 18.0)

    def test_not_symmetric(self):
        forward = score("Panadol", "Panadol Extra", MatchPolicy.NUMERIC_AWARE)
        backward = score("Panadol Extra", "Panadol", MatchPolicy.NUMERIC_AWARE)
        self.assertEqual(forward, 13.0)
        self.assertEqual(backward, 3.0)

    def test_best_match_picks_dosage(self):
        stock = ["Coartem 12 comprimidos", "Coartem 6 comprimidos"]
        self.assertEqual(best_match("Coartem 6", stock), "Coartem 6 comprimidos")

    def test_best_match_below_threshold_returns_none(self):
        stock = ["Dipirona 500mg", "Paracetamol 750mg"]
        self.assertIsNone(best_match("Dipirona gotas", stock))

    def test_best_match_first_wins_ties(self):
        stock = ["Amoxil 500 caps", "Amoxil 500 susp"]
        self.assertEqual(best_match("Amoxil 500", stock), "Amoxil 500 caps")

    def test_best_match_empty_query_or_stock(self):
        self.assertIsNone(best_match("", ["Panadol"]))
        self.assertIsNone(best_match("Panadol", []))

    def test_best_match_with_key(self):
        stock = [{"name": "Panadol Extra"}, {"name": "Ibuprofeno"}]
        self.assertEqual(best_match("panadol", stock, key=lambda s: s["name"]), {"name": "Panadol Extra"})


class PolarsNormalizationTests(unittest.TestCase):
    def test_normalize_series(self):
        result = normalize_series(pl.Series(["AMOXICILINA 500MG", None, "Dipirona Sódica"]))
        self.assertEqual(result.to_list(), ["amoxicilina 500 mg", "", "dipirona sodica"])

    def test_normalize_dataframe_column_adds_column(self):
        df = pl.DataFrame({"nome": ["Panadol 500mg", "  "]})
        out = normalize_dataframe_column(df, "nome")
        self.assertIn("nome_normalized", out.columns)
        self.assertEqual(out["nome_normalized"].to_list(), ["panadol 500 mg", ""])
        self.assertEqual(out["nome"].to_list(), ["Panadol 500mg", "  "])


if __name__ == "__main__":
    unittest.main()
