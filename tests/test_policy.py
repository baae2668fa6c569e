import pytest

from pulsarsec.config import InvalidValueError, ModuleConfig
from pulsarsec.policy import (
    MAX_IMAGE_LEN,
    FilterConfig,
    Image,
    PidRule,
    PolicyDecision,
    Rule,
)


@pytest.mark.parametrize(
    "children, interesting, raw",
    [(False, False, 0), (False, True, 1), (True, False, 2), (True, True, 3)],
)
def test_policy_decision_raw(children, interesting, raw):
    decision = PolicyDecision(interesting=interesting, children_interesting=children)
    assert decision.as_raw() == raw


def test_default_decision_is_fully_interesting():
    assert PolicyDecision() == PolicyDecision(True, True)
    assert PolicyDecision().as_raw() == 3


def test_image_round_trip_and_padding():
    image = Image.parse("/usr/bin/echo")
    assert str(image) == "/usr/bin/echo"
    assert len(bytes(image)) == MAX_IMAGE_LEN
    assert bytes(image).startswith(b"/usr/bin/echo\0")
    assert Image.parse("/usr/bin/echo") == image


def test_image_length_limit():
    assert str(Image.parse("a" * (MAX_IMAGE_LEN - 1))) == "a" * (MAX_IMAGE_LEN - 1)
    with pytest.raises(ValueError, match="smaller than"):
        Image.parse("a" * MAX_IMAGE_LEN)


def test_image_must_be_ascii():
    with pytest.raises(ValueError, match="process image must be ascii"):
        Image.parse("/bin/é")


def test_empty_config_has_no_rules():
    assert FilterConfig.from_module_config(ModuleConfig()) == FilterConfig()


def test_rules_from_module_config():
    config = ModuleConfig(
        {
            "targets": "/bin/a, /bin/b",
            "targets_children": "/bin/c",
            "whitelist": "/bin/w",
            "whitelist_children": "/bin/d",
            "pid_targets": "1,2",
            "pid_targets_children": "3",
        }
    )
    result = FilterConfig.from_module_config(config)
    assert result.targets == [
        Rule(Image.parse("/bin/a"), False),
        Rule(Image.parse("/bin/b"), False),
        Rule(Image.parse("/bin/c"), True),
    ]
    assert result.whitelist == [
        Rule(Image.parse("/bin/w"), False),
        Rule(Image.parse("/bin/d"), True),
    ]
    assert result.pid_targets == [PidRule(1, False), PidRule(2, False), PidRule(3, False)]


def test_invalid_image_is_reported_with_field():
    config = ModuleConfig({"whitelist": "/bin/é"})
    with pytest.raises(InvalidValueError) as info:
        FilterConfig.from_module_config(config)
    assert info.value.field == "whitelist"
    assert info.value.value == "/bin/é"


@pytest.mark.parametrize("pid", ["abc", "1_000", "99999999999"])
def test_invalid_pid_is_rejected(pid):
    with pytest.raises(InvalidValueError) as info:
        FilterConfig.from_module_config(ModuleConfig({"pid_targets": pid}))
    assert info.value.field == "pid_targets"