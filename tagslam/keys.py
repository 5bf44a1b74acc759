"""Key space shared by every unknown in the tag graph.

All unknowns live in one flat GTSAM key space. A key is a GTSAM symbol:
an 8 bit character in the top byte and a 56 bit index below it.

    't'          T_b_o   tag-to-body transform, index = tag id
    'w'          X_w_i   tag corner in world coordinates,
                         index = frame * 4 * NUM_TAG_IDS + tag_id * 4 + corner
    'a' + cam    T_w_c   camera-to-world transform, index = frame
    'A' + body   T_w_b   body-to-world transform, index = frame

Static cameras and bodies always use frame 0.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import gtsam

from .errors import ConfigurationError

NUM_TAG_IDS = 256
MAX_CAM_ID = 8
MAX_BODY_ID = ord('Z') - ord('A') - 1   # 24 bodies: 'A'..'X'
CORNERS_PER_TAG = 4

_CHR_SHIFT = 56
_INDEX_MASK = (1 << _CHR_SHIFT) - 1
_CORNER_STRIDE = CORNERS_PER_TAG * NUM_TAG_IDS


class KeyKind(Enum):
    TAG_TO_BODY = "tag_to_body"
    WORLD_CORNER = "world_corner"
    CAMERA = "camera"
    BODY = "body"


@dataclass(frozen=True)
class GraphKey:
    """Decoded address of one unknown.

    ``ident`` is the tag id, camera index or body index depending on ``kind``.
    ``corner`` is only meaningful for WORLD_CORNER keys.
    """
    kind: KeyKind
    ident: int
    frame: int = 0
    corner: int = 0

    def key(self) -> int:
        if self.kind is KeyKind.TAG_TO_BODY:
            return tag_key(self.ident)
        if self.kind is KeyKind.WORLD_CORNER:
            return corner_key(self.ident, self.corner, self.frame)
        if self.kind is KeyKind.CAMERA:
            return camera_key(self.ident, self.frame)
        return body_key(self.ident, self.frame)

    def label(self) -> str:
        if self.kind is KeyKind.TAG_TO_BODY:
            return f"tag{self.ident}"
        if self.kind is KeyKind.WORLD_CORNER:
            return f"tag{self.ident}_c{self.corner}@{self.frame}"
        if self.kind is KeyKind.CAMERA:
            return f"cam{self.ident}@{self.frame}"
        return f"body{self.ident}@{self.frame}"


def _check_frame(frame: int) -> int:
    if frame < 0:
        raise ConfigurationError(f"frame must be non-negative: {frame}")
    if frame > _INDEX_MASK:
        raise ConfigurationError(f"frame exceeds symbol index range: {frame}")
    return int(frame)


def _check_tag_id(tag_id: int) -> int:
    if not 0 <= tag_id < NUM_TAG_IDS:
        raise ConfigurationError(f"tag id out of range [0, {NUM_TAG_IDS}): {tag_id}")
    return int(tag_id)


def tag_key(tag_id: int) -> int:
    """Key of T_b_o, the transform from tag to its parent body."""
    return gtsam.symbol('t', _check_tag_id(tag_id))


def corner_key(tag_id: int, corner: int, frame: int = 0) -> int:
    """Key of X_w_i, one tag corner in world coordinates."""
    _check_tag_id(tag_id)
    if not 0 <= corner < CORNERS_PER_TAG:
        raise ConfigurationError(f"corner out of range [0, {CORNERS_PER_TAG}): {corner}")
    frame = _check_frame(frame)
    if frame > (_INDEX_MASK - _CORNER_STRIDE) // _CORNER_STRIDE:
        raise ConfigurationError(f"frame too large for corner key: {frame}")
    return gtsam.symbol('w', frame * _CORNER_STRIDE + tag_id * CORNERS_PER_TAG + corner)


def camera_key(cam_index: int, frame: int = 0, is_static: bool = False) -> int:
    """Key of T_w_c for the given frame (frame 0 for static cameras)."""
    if not 0 <= cam_index < MAX_CAM_ID:
        raise ConfigurationError(f"camera index out of range [0, {MAX_CAM_ID}): {cam_index}")
    frame = 0 if is_static else _check_frame(frame)
    return gtsam.symbol(chr(ord('a') + cam_index), frame)


def body_key(body_index: int, frame: int = 0, is_static: bool = False) -> int:
    """Key of T_w_b for the given frame (frame 0 for static bodies)."""
    if not 0 <= body_index < MAX_BODY_ID:
        raise ConfigurationError(f"body index out of range [0, {MAX_BODY_ID}): {body_index}")
    frame = 0 if is_static else _check_frame(frame)
    return gtsam.symbol(chr(ord('A') + body_index), frame)


def split_key(key: int) -> Tuple[str, int]:
    """Return the (character, index) pair of a GTSAM symbol key."""
    key = int(key)
    return chr(key >> _CHR_SHIFT), key & _INDEX_MASK


def decode_corner_key(key: int) -> Tuple[int, int, int]:
    """Inverse of corner_key: returns (tag_id, corner, frame)."""
    c, idx = split_key(key)
    if c != 'w':
        raise ConfigurationError(f"not a world corner key: {c}{idx}")
    frame = idx // _CORNER_STRIDE
    rem = idx - frame * _CORNER_STRIDE
    return rem // CORNERS_PER_TAG, rem % CORNERS_PER_TAG, frame


def decode_key(key: int) -> GraphKey:
    c, idx = split_key(key)
    if c == 't' and idx < NUM_TAG_IDS:
        return GraphKey(KeyKind.TAG_TO_BODY, idx)
    if c == 'w':
        tag_id, corner, frame = decode_corner_key(key)
        return GraphKey(KeyKind.WORLD_CORNER, tag_id, frame, corner)
    if 'a' <= c < chr(ord('a') + MAX_CAM_ID):
        return GraphKey(KeyKind.CAMERA, ord(c) - ord('a'), idx)
    if 'A' <= c < chr(ord('A') + MAX_BODY_ID):
        return GraphKey(KeyKind.BODY, ord(c) - ord('A'), idx)
    raise ConfigurationError(f"key does not belong to the tag graph: {c}{idx}")
