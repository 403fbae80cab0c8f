import unittest

from weekplan.title_normalizer import normalize_title


class TitleNormalizerTests(unittest.TestCase):
    def test_abbreviation_and_full_name_share_key(self) -> None:
        self.assertEqual(normalize_title("HIST 101"), normalize_title("history 101"))
        self.assertEqual(normalize_title("HIST 101"), "history 101")

    def test_different_course_numbers_stay_distinct(self) -> None:
        self.assertNotEqual(normalize_title("HIST 101"), normalize_title("HIST 111"))

    def test_punctuation_and_whitespace_are_dropped(self) -> None:
        self.assertEqual(normalize_title("  Calc-II:   Review!! "), "calcii review")
        self.assertEqual(normalize_title("Bio  -  Lab"), "biology lab")

    def test_multi_word_expansion(self) -> None:
        self.assertEqual(normalize_title("CS 201"), "computer science 201")

    def test_idempotent(self) -> None:
        for title in ("HIST 101", "Chem lab @ Room 4", "cs", "", "Office Hours"):
            once = normalize_title(title)
            self.assertEqual(normalize_title(once), once)

    def test_empty_and_symbol_only_titles(self) -> None:
        self.assertEqual(normalize_title(""), "")
        self.assertEqual(normalize_title("--- !!"), "")


if __name__ == "__main__":
    unittest.main()
