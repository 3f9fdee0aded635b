"""Tests for Babbler tokenizers and the stemmer."""
import pytest

from babbler.tokenizers import CobeStemmer, CobeTokenizer, MegaHALTokenizer, get_tokenizer


class TestCobeTokenizer:
    def setup_method(self):
        self.tokenizer = CobeTokenizer()

    def test_words_punctuation_and_spaces(self):
        assert self.tokenizer.split("hello,  world!") == ["hello", ",", " ", "world", "!"]

    def test_strips_outer_whitespace(self):
        assert self.tokenizer.split("  hi there  ") == ["hi", " ", "there"]

    def test_empty_and_blank(self):
        assert self.tokenizer.split("") == []
        assert self.tokenizer.split(" \t\n") == []

    def test_url_is_one_token(self):
        tokens = self.tokenizer.split("see http://example.com/x?a=1 now")
        assert tokens == ["see", " ", "http://example.com/x?a=1", " ", "now"]

    def test_hyphen_and_apostrophe_words(self):
        assert self.tokenizer.split("don't hy-phen") == ["don't", " ", "hy-phen"]

    def test_punctuation_run(self):
        assert self.tokenizer.split("wait... what?!") == ["wait", "...", " ", "what", "?!"]

    def test_emoticon_with_dash(self):
        assert self.tokenizer.split("sad :-(") == ["sad", " ", ":-("]

    def test_case_preserved(self):
        assert self.tokenizer.split("Hello World") == ["Hello", " ", "World"]

    def test_unicode_words(self):
        assert self.tokenizer.split("über café") == ["über", " ", "café"]

    def test_join(self):
        assert self.tokenizer.join(["hello", ",", " ", "world"]) == "hello, world"


class TestMegaHALTokenizer:
    def setup_method(self):
        self.tokenizer = MegaHALTokenizer()

    def test_split_uppercases_and_terminates(self):
        assert self.tokenizer.split("Hello, world") == ["HELLO", ", ", "WORLD", "."]

    def test_existing_terminator_kept(self):
        assert self.tokenizer.split("hi there!") == ["HI", " ", "THERE", "!"]

    def test_numbers_split_from_words(self):
        assert self.tokenizer.split("route66") == ["ROUTE", "66", "."]

    def test_empty(self):
        assert self.tokenizer.split("") == []

    def test_join_capitalizes_sentences(self):
        assert self.tokenizer.join(["HI", ". ", "THERE", "."]) == "Hi. There."

    def test_join_lowercases_rest(self):
        assert self.tokenizer.join(["HELLO", ", ", "WORLD", "."]) == "Hello, world."


class TestGetTokenizer:
    def test_known_names(self):
        assert isinstance(get_tokenizer("MegaHAL"), MegaHALTokenizer)
        assert isinstance(get_tokenizer("Cobe"), CobeTokenizer)

    def test_missing_or_unknown_defaults_to_cobe(self):
        assert isinstance(get_tokenizer(None), CobeTokenizer)
        assert isinstance(get_tokenizer("Klingon"), CobeTokenizer)


class TestCobeStemmer:
    def setup_method(self):
        self.stemmer = CobeStemmer("english")

    def test_words_are_lowercased_and_stemmed(self):
        assert self.stemmer.stem("Running") == "run"
        assert self.stemmer.stem("runs") == "run"

    def test_smiles_fold_together(self):
        for token in (":)", ":-)", ":))", ": )"):
            assert self.stemmer.stem(token) == ":)"

    def test_frowns_fold_together(self):
        for token in (":(", ":-(", ":((", ":'("):
            assert self.stemmer.stem(token) == ":("

    def test_other_punctuation_unchanged(self):
        assert self.stemmer.stem("?!") == "?!"
        assert self.stemmer.stem("") == ""

    def test_unknown_language(self):
        with pytest.raises(KeyError):
            CobeStemmer("klingon")
