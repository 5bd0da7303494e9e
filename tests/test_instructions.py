import pytest

from rvsim.instructions import (
    BType,
    DecodeError,
    Ecall,
    IType,
    JType,
    RType,
    SType,
    UType,
    Visitor,
    dispatch,
    field_mask,
    mask,
    sign_from,
    to_signed,
)


def test_mask_and_field_mask():
    assert mask(8) == 0xFF
    assert field_mask(0, 4) == mask(5)
    assert field_mask(5, 11) >> 5 == mask(7)
    assert field_mask(5, 11) & mask(5) == 0


def test_sign_from_negative_and_positive():
    assert to_signed(sign_from(mask(12), 11)) == -1
    assert sign_from(mask(11), 11) == mask(11)


def test_to_signed_roundtrip():
    for value in (0, 1, -1, -2048, 2047, -(1 << 31)):
        assert to_signed(value & 0xFFFFFFFF) == value


def test_parse_exit_instruction():
    ins = dispatch(0x0FF00513)
    assert isinstance(ins, IType)
    assert ins.opcode == 0b0010011
    assert ins.fn3 == 0
    assert ins.rd == 10
    assert ins.rs1 == 0
    assert ins.imm == 255


def test_utype_fields():
    upper = 0xABCDE
    cmd = upper << 12 | 7 << 7 | 0b0110111
    ins = UType.parse(cmd)
    assert ins.opcode == 0b0110111
    assert ins.rd == 7
    assert ins.imm == upper << 12


def test_jtype_negative_offset():
    ins = JType.parse(0xFFDFF06F)
    assert ins.rd == 0
    assert to_signed(ins.imm) == -4


def test_btype_sign_extends_on_request():
    ins = BType.parse(0xFE000EE3)
    assert ins.opcode == 0b1100011
    unsigned = ins.imm
    ins.sign()
    assert to_signed(ins.imm) == -4
    assert ins.imm & mask(13) == unsigned


def test_stype_fields_and_sign():
    rs1, rs2, offset = 6, 5, 8
    cmd = rs2 << 20 | rs1 << 15 | 0b010 << 12 | offset << 7 | 0b0100011
    ins = SType.parse(cmd)
    assert (ins.rs1, ins.rs2, ins.fn3, ins.imm) == (rs1, rs2, 0b010, offset)
    neg = SType.parse(0x7F << 25 | 0x1F << 7 | 0b0100011)
    neg.sign()
    assert to_signed(neg.imm) == -1


def test_itype_sign():
    ins = IType.parse(mask(12) << 20 | 0b0010011)
    assert ins.imm == mask(12)
    ins.sign()
    assert to_signed(ins.imm) == -1


def test_rtype_fields():
    cmd = 0b0100000 << 25 | 3 << 20 | 2 << 15 | 0 << 12 | 1 << 7 | 0b0110011
    ins = RType.parse(cmd)
    assert (ins.fn7, ins.rs2, ins.rs1, ins.fn3, ins.rd) == (0b0100000, 3, 2, 0, 1)


def test_ecall_kinds():
    assert Ecall.parse(0x73).kind == 0
    assert Ecall.parse(0x100073).kind == 1
    assert Ecall.parse(0x200073).kind == -1
    assert isinstance(dispatch(0x100073), Ecall)


@pytest.mark.parametrize("cmd", [0, 0xFFFFFFFF, 0x200073])
def test_dispatch_rejects_unknown(cmd):
    with pytest.raises(DecodeError):
        dispatch(cmd)


class _Recorder(Visitor):
    def visit_u(self, ins):
        return "u"

    def visit_j(self, ins):
        return "j"

    def visit_i(self, ins):
        return "i"

    def visit_b(self, ins):
        return "b"

    def visit_s(self, ins):
        return "s"

    def visit_r(self, ins):
        return "r"


def test_visitor_is_abstract():
    with pytest.raises(TypeError):
        Visitor()