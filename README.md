# teensybridge

`teensybridge` connects Teensy boards running cockpit-control firmware to
simulator variables. Each Teensy registers named data refs over USB raw HID;
`teensybridge` looks those names up in a data mapping file, sends values to
the board when they change, and applies the values the board writes back.

The package is made of these modules:

- `teensybridge.mapping`: reads data mapping files into a `MappingTable`.
- `teensybridge.teensy`: `Teensy` boards, the `Item`s they register, the
  `PacketRing` queues between threads and the `TeensyRegistry` of boards.
- `teensybridge.io`: decodes frames from the boards (`process_input`), applies
  their commands and writes and reads current values (`update_sim`), and
  queues frames back to them (`process_output`, `plugin_enable`,
  `plugin_disable`).
- `teensybridge.usb`: `UsbManager` finds Teensy boards under
  `/sys/class/hidraw` and `/dev`, and runs a reader and a writer thread for
  each one.
- `teensybridge.fs2020`: `Fs2020DataStore` holds values read from the
  simulator each frame and sends writes through a callable.
- `teensybridge.jetbridge`: `Client` turns variable writes into RPN request
  packets (`rpn_code`, `Packet`) and hands the encoded bytes to a callable.
- `teensybridge.pi` and `teensybridge.gpio`: `PiDataStore` holds test values
  locally, and hardware buttons on a Raspberry Pi's GPIO pins adjust them.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Data mapping file

Each non-blank line maps one Teensy data ref. Anything after `#` is a comment.

```
<data ref> ; <read var>,<units> [; <write var>,<units>]
```

- If the write var is left out, the read var and its units are used for writing.
- A read var that starts with a digit is a test value instead, optionally
  followed by a step, e.g. `100+0.5`; `Fs2020DataStore.read` adds the step on
  every read.
- An empty read var leaves the data ref unmapped.
- In `Fs2020DataStore`, units of `10khz` are scaled by ten on the way to and
  from the simulator, and `string` units are requested as 32-character strings.

Example:

```
# Teensy data ref            ; read var                     ; write var
sim/cockpit/radios/com1_freq ; COM ACTIVE FREQUENCY:1,10khz ; COM_RADIO_SET,10khz
sim/test/counter             ; 0+1
```

A malformed line (no semicolon, missing data ref, missing comma or units,
more than two semicolons, a duplicate data ref, or more than 256 mappings)
stops loading with a `teensybridge.mapping.MappingError` whose `line_num`
names the line. A file that cannot be opened also raises `MappingError`.

```python
from teensybridge.mapping import load_mappings

table = load_mappings("data_mapping.txt")
ref = table.ref_num("sim/test/counter", 0)
print(table.ref_name(ref))   # "Test value 0.000 (+1.000)"
```

`ref_num` returns `None` (and prints a notice) for a data ref that is not in
the table.

## Raspberry Pi

```
teensybridge-pi [mapping-file]
```

Without an argument, `data_mapping.txt` beside the program is used. A name
that contains no `/` or `\` and no drive letter is also looked up beside the
program. The command runs until interrupted with Ctrl-C.

Hardware buttons are read from `/media/sounds/Buttons.txt`, one per line:

```
<button>=<data ref> <initial value><+|-step>
```

Buttons 1 to 9 are wired to BCM GPIO pins 2, 3, 4, 17, 27, 22, 10, 9 and 11
(`button_to_gpio_pin`). Each pin is set as an input with its pull-up through
`raspi-gpio set <pin> ip pu`, and levels are read every loop with
`raspi-gpio get`. Lines ending in `.wav` are skipped, and at most 9 buttons
are used. On the first loop each button's data ref gets its initial value;
while a button is held down, its data ref is adjusted by the step on every
loop of about 30 ms.

## USB access on Linux

Teensy boards are found through `/sys/class/hidraw` and opened as
`/dev/hidraw*`. A board must report vendor id `0x16C0`, product id `0x0488`,
a product name containing "Teensy", and a report descriptor that starts with
the Teensy controls signature. If a board is found but cannot be opened,
install udev rules that give your user read and write access to it. New and
removed devices are checked for on every eighth call of
`UsbManager.find_new_devices`.

## What this package does not do

- It does not open a connection to the flight simulator. `Fs2020DataStore`
  expects each frame of read values to be passed to `receive_data`, and both
  it and `jetbridge.Client` send through a callable you supply. There is no
  command that runs the simulator side; only `teensybridge-pi` is provided.
- Teensy commands (item type 0) are not bound to anything: a board's command
  registrations are refused, and reading string values from the simulator is
  not supported.
- USB discovery works on Linux only.