import pytest

from teensybridge.mapping import parse_mappings
from teensybridge.pi import (
    Button,
    PiDataStore,
    button_to_gpio_pin,
    hardware_init,
    load_buttons,
    main,
    parse_buttons,
    poll_buttons,
)


class FakeGpio:
    def __init__(self, states=None):
        self.states = states or {}
        self.added = []
        self.reads = 0

    def add(self, pin):
        self.added.append(pin)

    def read_all(self):
        self.reads += 1

    def state(self, pin):
        return self.states.get(pin, 1)


@pytest.fixture
def store():
    return PiDataStore(parse_mappings(["ref1; 5", "ref2; 7"]))


def test_button_pins_from_wiring():
    assert button_to_gpio_pin(1) == 2
    assert button_to_gpio_pin(4) == 17
    assert button_to_gpio_pin(9) == 11
    assert button_to_gpio_pin(10) is None


def test_store_read_and_write(store):
    assert store.read(0) == 5.0
    store.write(0, 8)
    assert store.read(0) == 8
    assert store.written(0) is False


def test_store_adjust_adds(store):
    before = store.read(1)
    store.write(1, 0.25, True)
    assert store.read(1) - before == pytest.approx(0.25)


def test_parse_buttons_filters_bad_lines(store):
    gpio = FakeGpio()
    lines = [
        "# comment only",
        "1=ref1 3+1",
        "x=sound.wav",
        "2 no equals",
        "10=ref1 1",
        "3=ref1",
        "4=unknown 1",
    ]
    buttons = parse_buttons(lines, store, gpio)
    assert buttons == [Button(1, 2, 0, 3.0, 1.0)]
    assert gpio.added == [2]


def test_parse_button_without_init(store):
    buttons = parse_buttons(["5=ref2 -0.5"], store, FakeGpio())
    assert buttons[0].init_value is None
    assert buttons[0].adjust == -0.5
    assert buttons[0].gpio_pin == 27


def test_hardware_init_sets_initial_value(store):
    buttons = parse_buttons(["1=ref1 3+1"], store, FakeGpio())
    hardware_init(buttons, store)
    assert store.read(0) == 3.0


def test_poll_pressed_button_adjusts(store):
    buttons = parse_buttons(["1=ref1 +0.5", "2=ref2 +2"], store, FakeGpio())
    gpio = FakeGpio({2: 0})
    before = store.read(0)
    assert poll_buttons(buttons, store, gpio) == 1
    assert store.read(0) - before == pytest.approx(0.5)
    assert store.read(1) == 7.0
    assert gpio.reads == 1
    assert buttons[0].prev_gpio_val == 0


def test_load_buttons_from_file(tmp_path, store):
    path = tmp_path / "Buttons.txt"
    path.write_text("1=ref1 3+1\n")
    buttons = load_buttons(path, store, FakeGpio())
    assert [b.button for b in buttons] == [1]


def test_load_buttons_missing_file(tmp_path, store):
    with pytest.raises(OSError):
        load_buttons(tmp_path / "missing.txt", store, FakeGpio())


def test_main_missing_mapping_file(tmp_path):
    assert main([str(tmp_path / "missing.txt")]) == 1