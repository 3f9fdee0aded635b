"""
Babbler Tokenizers -- split text into tokens, join tokens into text, and stem.

Two tokenizers are available, selected by the brain's ``tokenizer`` info:

- ``Cobe`` (default): words, urls, punctuation runs and single spaces.
- ``MegaHAL``: the classic uppercase word/number/non-word split.

Stemming uses the Snowball algorithms from ``snowballstemmer``.
"""

import logging
import re
from typing import List

import snowballstemmer

logger = logging.getLogger("babbler.tokenizers")

TOKENIZERS = ("Cobe", "MegaHAL")


class Tokenizer:
    def split(self, phrase: str) -> List[str]:
        raise NotImplementedError

    def join(self, words: List[str]) -> str:
        raise NotImplementedError


class MegaHALTokenizer(Tokenizer):
    """A traditional MegaHAL style tokenizer. This considers any of these
    to be a token:

    * one or more consecutive alpha characters (plus apostrophe)
    * one or more consecutive numeric characters
    * one or more consecutive punctuation/space characters (not apostrophe)

    This tokenizer ignores differences in capitalization.
    """

    _split_re = re.compile(r"([A-Z']+|[0-9]+|[^A-Z'0-9]+)")

    def split(self, phrase: str) -> List[str]:
        if not phrase:
            return []

        # add ending punctuation if it is missing
        if phrase[-1] not in ".!?":
            phrase = phrase + "."

        return self._split_re.findall(phrase.upper())

    def join(self, words: List[str]) -> str:
        """Capitalize the first alpha character in the reply and the first
        alpha character that follows one of [.?!] and a space."""
        chars = list("".join(words))
        start = True

        for i, char in enumerate(chars):
            if char.isalpha():
                if start:
                    chars[i] = char.upper()
                else:
                    chars[i] = char.lower()
                start = False
            elif i > 2 and chars[i - 1] in ".?!" and char.isspace():
                start = True

        return "".join(chars)


class CobeTokenizer(Tokenizer):
    """A tokenizer that is somewhat improved from MegaHAL. These are
    considered tokens:

    * one or more consecutive Unicode word characters (plus apostrophe and dash)
    * one or more consecutive Unicode non-word characters, possibly with
      internal whitespace
    * the whitespace between word or non-word tokens
    * an HTTP url, [word]: followed by any run of non-space characters.

    This tokenizer collapses multiple spaces in a whitespace token into a
    single space character. It preserves differences in case.
    """

    # Hyphen is a word character so hyphenated words stay one token
    # (hy-phen), but it is also allowed inside punctuation runs (:-( ).
    _regex = re.compile(
        r"(\w+:\S+"  # urls
        r"|[\w'-]+"  # words
        r"|[^\w\s][^\w]*[^\w\s]"  # multiple punctuation
        r"|[^\w\s]"  # a single punctuation character
        r"|\s+)",  # whitespace
        re.UNICODE,
    )

    def split(self, phrase: str) -> List[str]:
        # Strip leading and trailing whitespace. In the brain this prevents
        # edges from the root node that have has_space set.
        phrase = phrase.strip()

        if not phrase:
            return []

        tokens = self._regex.findall(phrase)

        # collapse runs of whitespace into a single space
        return [" " if token[0].isspace() and len(token) > 1 else token for token in tokens]

    def join(self, words: List[str]) -> str:
        return "".join(words)


def get_tokenizer(name) -> Tokenizer:
    """Return the tokenizer for a brain's ``tokenizer`` info value."""
    if name == "MegaHAL":
        return MegaHALTokenizer()
    if name not in (None, "Cobe"):
        logger.info("Unknown tokenizer: %s. Using CobeTokenizer", name)
    return CobeTokenizer()


class CobeStemmer:
    """Snowball stemmer that also folds common emoticons together."""

    _smile_re = re.compile(r":-?[ \)]*\)")
    _frown_re = re.compile(r":-?[' \(]*\(")

    def __init__(self, name: str):
        # raises KeyError for an unknown language
        self.stemmer = snowballstemmer.stemmer(name)
        self.name = name

    def stem(self, token: str) -> str:
        if not re.search(r"\w", token):
            return self.stem_nonword(token)

        # Don't preserve case when stemming, i.e. create lowercase stems.
        # This allows replies that switch the case of input words but are
        # still generated in context.
        return self.stemmer.stemWord(token.lower())

    def stem_nonword(self, token: str) -> str:
        # Stem common smile and frown emoticons down to :) and :(
        if self._smile_re.search(token):
            return ":)"

        if self._frown_re.search(token):
            return ":("

        return token
