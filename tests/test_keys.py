import pytest

from tagslam.errors import ConfigurationError
from tagslam.keys import (CORNERS_PER_TAG, MAX_BODY_ID, MAX_CAM_ID, NUM_TAG_IDS,
                          KeyKind, GraphKey, body_key, camera_key, corner_key,
                          decode_corner_key, decode_key, split_key, tag_key)


def test_categories_do_not_collide():
    keys = {tag_key(0), corner_key(0, 0, 0), camera_key(0, 0), body_key(0, 0)}
    assert len(keys) == 4


def test_static_owners_use_frame_zero():
    assert camera_key(2, 17, is_static=True) == camera_key(2, 0)
    assert body_key(3, 99, is_static=True) == body_key(3, 0)
    assert camera_key(2, 17) != camera_key(2, 0)


def test_split_key():
    assert split_key(tag_key(42)) == ('t', 42)
    assert split_key(camera_key(1, 5)) == ('b', 5)
    assert split_key(body_key(2, 7)) == ('C', 7)


def test_corner_key_roundtrip_at_tag_boundary():
    k_last = corner_key(255, 3, 4)
    k_next = corner_key(0, 0, 5)
    assert k_last != k_next
    assert decode_corner_key(k_last) == (255, 3, 4)
    assert decode_corner_key(k_next) == (0, 0, 5)


def test_decode_key_labels():
    assert decode_key(tag_key(9)) == GraphKey(KeyKind.TAG_TO_BODY, 9)
    assert decode_key(camera_key(1, 3)).label() == "cam1@3"
    assert decode_key(body_key(0, 2)).kind is KeyKind.BODY
    gk = decode_key(corner_key(7, 2, 1))
    assert (gk.ident, gk.corner, gk.frame) == (7, 2, 1)
    assert gk.key() == corner_key(7, 2, 1)


@pytest.mark.parametrize("fn, args", [
    (tag_key, (256,)),
    (tag_key, (-1,)),
    (camera_key, (8, 0)),
    (body_key, (24, 0)),
    (camera_key, (0, -1)),
    (corner_key, (1, 4, 0)),
])
def test_out_of_range_raises(fn, args):
    with pytest.raises(ConfigurationError):
        fn(*args)


def test_decode_corner_key_rejects_other_kinds():
    with pytest.raises(ConfigurationError):
        decode_corner_key(tag_key(1))


FRAMES = list(range(6)) + [1023, 1024, 10 ** 6]


def _all_keys():
    keys = [(KeyKind.TAG_TO_BODY, tag_key(t)) for t in range(NUM_TAG_IDS)]
    keys += [(KeyKind.WORLD_CORNER, corner_key(t, c, f))
             for t in range(NUM_TAG_IDS) for c in range(CORNERS_PER_TAG) for f in FRAMES]
    keys += [(KeyKind.CAMERA, camera_key(i, f)) for i in range(MAX_CAM_ID) for f in FRAMES]
    keys += [(KeyKind.BODY, body_key(i, f)) for i in range(MAX_BODY_ID) for f in FRAMES]
    return keys


def test_encoders_are_injective_across_categories():
    keys = [k for _, k in _all_keys()]
    assert len(set(keys)) == len(keys)


def test_every_key_decodes_to_itself():
    for kind, k in _all_keys():
        gk = decode_key(k)
        assert gk.kind is kind
        assert gk.key() == k


def test_corner_decoder_is_left_inverse():
    for f in FRAMES:
        for t in range(NUM_TAG_IDS):
            for c in range(CORNERS_PER_TAG):
                assert decode_corner_key(corner_key(t, c, f)) == (t, c, f)
