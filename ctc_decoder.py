# filename: ctc_decoder.py
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np

from ocr_contracts import RECOGNITION_OUTPUT_SPEC

logger = logging.getLogger(__name__)

BLANK_INDEX = 0


class Dictionary:
    """
    Character table of the recognition model.

    Class index 0 is the CTC blank and is not stored; class ``i`` maps to
    entry ``i - 1``.
    """

    def __init__(self, characters: Iterable[str]):
        self._chars: Tuple[str, ...] = tuple(characters)

    def __len__(self) -> int:
        return len(self._chars)

    def __getitem__(self, slot: int) -> str:
        return self._chars[slot]

    def __iter__(self):
        return iter(self._chars)

    def __repr__(self) -> str:
        return f"Dictionary({len(self._chars)} characters)"

    def char_for(self, class_index: int) -> str:
        """Character for a non-blank class index; unknown indices map to ''"""
        slot = class_index - 1
        if 0 <= slot < len(self._chars):
            return self._chars[slot]
        return ""


def load_dictionary(text: str) -> Dictionary:
    """Newline-delimited dictionary text plus the trailing space entry the model expects"""
    chars = [entry[:-1] if entry.endswith("\r") else entry for entry in text.split("\n")]
    # a trailing newline leaves one empty element behind
    if chars and chars[-1] == "":
        chars.pop()
    chars.append(" ")
    return Dictionary(chars)


def load_dictionary_file(path: Union[str, Path]) -> Dictionary:
    path = Path(path)
    dictionary = load_dictionary(path.read_bytes().decode("utf-8"))
    logger.info(f"Loaded dictionary {path} with {len(dictionary)} entries")
    return dictionary


@dataclass
class DecodedLine:
    text: str
    mean_confidence: float
    box: Optional[np.ndarray] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        result = {"text": self.text, "mean_confidence": float(self.mean_confidence)}
        if self.box is not None:
            result["box"] = np.asarray(self.box).tolist()
        return result


def greedy_indices(probs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Arg-max class index and its probability per timestep of a [seq, classes] array"""
    indices = np.argmax(probs, axis=-1)
    values = np.take_along_axis(probs, indices[:, None], axis=-1)[:, 0]
    return indices, values


def collapse(indices: Sequence[int], blank_index: int = BLANK_INDEX) -> np.ndarray:
    """
    Positions surviving CTC collapsing.

    A timestep is dropped when it is blank or repeats the raw index of the
    timestep right before it; a blank between two equal symbols therefore
    keeps both of them.
    """
    indices = np.asarray(indices)
    if indices.size == 0:
        return np.zeros(0, dtype=bool)
    changed = np.ones(indices.shape, dtype=bool)
    changed[1:] = indices[1:] != indices[:-1]
    return changed & (indices != blank_index)


def ctc_greedy_decode(output: np.ndarray, dictionary: Dictionary, blank_index: int = BLANK_INDEX) -> DecodedLine:
    """Decode a [1, seq, classes] recognition output into text and mean confidence"""
    output = RECOGNITION_OUTPUT_SPEC.validate(output)
    indices, probs = greedy_indices(output[0])
    keep = collapse(indices, blank_index)

    kept_indices = indices[keep]
    kept_probs = probs[keep]
    text = "".join(dictionary.char_for(int(idx)) for idx in kept_indices)
    mean_confidence = float(kept_probs.astype(np.float64).mean()) if kept_probs.size else 0.0

    return DecodedLine(text=text, mean_confidence=mean_confidence)


def passes_confidence(line: DecodedLine, threshold: float = 0.3) -> bool:
    """Lines are kept only when their mean confidence strictly exceeds the threshold"""
    return line.mean_confidence > threshold

