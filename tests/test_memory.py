import io

from rvsim.memory import Memory, load_hex, parse_hex


def test_unwritten_reads_zero():
    mem = Memory()
    assert mem[1234] == 0
    assert len(mem) == 0


def test_write_keeps_low_byte():
    mem = Memory()
    mem[10] = 0x1FF
    assert mem[10] == 0xFF


def test_addresses_wrap_to_32_bits():
    mem = Memory()
    mem[-1] = 7
    assert mem[0xFFFFFFFF] == 7


def test_read_word_little_endian():
    mem = Memory()
    for offset, byte in enumerate([0x13, 0x05, 0xF0, 0x0F]):
        mem[offset] = byte
    assert mem.read_word(0) == 0x0FF00513


def test_parse_hex_program():
    mem = parse_hex("@00000000\n13 05 F0 0F\n")
    assert mem.read_word(0) == 0x0FF00513
    assert list(mem) == [0, 1, 2, 3]


def test_parse_hex_address_jump():
    mem = parse_hex("@00001000\nAB CD\n")
    assert mem[0x1000] == 0xAB
    assert mem[0x1001] == 0xCD
    assert mem[0] == 0


def test_parse_hex_ignores_lowercase():
    mem = parse_hex("ab cd")
    assert len(mem) == 0


def test_parse_hex_continues_after_multiple_sections():
    mem = parse_hex("@00000010\n01\n@00000020\n02 03")
    assert mem[0x10] == 1
    assert mem[0x20] == 2
    assert mem[0x21] == 3


def test_load_hex_text_and_binary_agree():
    image = "@00000004\nDE AD BE EF\n"
    text_mem = load_hex(io.StringIO(image))
    bin_mem = load_hex(io.BytesIO(image.encode()))
    assert text_mem.read_word(4) == bin_mem.read_word(4)
    assert text_mem[4] == 0xDE