import pytest

from conftest import DIM, skin_frame, vec
from face_timeclock.exceptions import NoUsableSignal
from face_timeclock.gallery import DescriptorGallery
from face_timeclock.identification import IdentificationService, describe_result
from face_timeclock.image_compare import encode_image_b64
from face_timeclock.models import CaptureSample, MatchResult, Slot


def test_descriptor_path_is_used_when_embedding_and_vectors_exist(gallery):
    result = IdentificationService(gallery).identify(CaptureSample(image=skin_frame(), embedding=vec(1.0, 0.05)))
    assert result.method == "descriptor"
    assert result.enrollee_id == "alice"
    assert result.accepted


def test_falls_back_to_images_when_embedding_has_wrong_dimension():
    image = skin_frame()
    gallery = DescriptorGallery(dim=DIM)
    gallery.add_or_replace_slot("alice", Slot.FRONT, vec(1.0), reference_image=encode_image_b64(image))

    result = IdentificationService(gallery).identify(CaptureSample(image=image, embedding=[0.1, 0.2]))
    assert result.method == "image"
    assert result.enrollee_id == "alice"


def test_falls_back_to_images_when_gallery_has_no_vectors():
    image = skin_frame()
    gallery = DescriptorGallery(dim=DIM)
    gallery.add_or_replace_slot("carol", Slot.LEGACY, None, reference_image=encode_image_b64(image))

    result = IdentificationService(gallery).identify(CaptureSample(embedding=vec(1.0), image_b64=encode_image_b64(image)))
    assert result.method == "image"
    assert result.enrollee_id == "carol"
    assert result.accepted


def test_undecodable_reference_images_are_skipped():
    gallery = DescriptorGallery(dim=DIM)
    gallery.add_or_replace_slot("carol", Slot.LEGACY, None, reference_image="bm90IGFuIGltYWdl")
    result = IdentificationService(gallery).identify(CaptureSample(image=skin_frame()))
    assert result.enrollee_id is None
    assert not result.accepted


def test_no_usable_signal_raises():
    with pytest.raises(NoUsableSignal):
        IdentificationService(DescriptorGallery(dim=DIM)).identify(CaptureSample(embedding=[0.1]))


def test_describe_result_messages():
    accepted = MatchResult.from_distance("alice", Slot.FRONT, 0.1, 0.4)
    assert describe_result(accepted, "Alice") == "Identified as Alice (match confidence: 90%)."

    near_miss = MatchResult.from_similarity("alice", Slot.LEGACY, 0.65, 0.7)
    assert describe_result(near_miss) == (
        "Almost recognized you (65% match). Need 70% or higher to authenticate."
    )

    miss = MatchResult.from_distance(None, None, 1.0, 0.4)
    assert describe_result(miss).startswith("No matching user found.")
