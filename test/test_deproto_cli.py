# coding=utf-8
from click.testing import CliRunner

from deproto_cli import main


def invoke(args, input_data):
    return CliRunner().invoke(main, args, input=input_data)


def test_raw_stdin():
    result = invoke([], b'\x08\x96\x01\x12\x05hello')
    assert result.exit_code == 0
    assert result.output == (
        '[1 Varint]: 150 (0x96)\n'
        '[2 Length-delimited]: (5 bytes) "hello"\n'
    )


def test_hex_input():
    result = invoke(['--hex'], '0a 02 68 69\n')
    assert result.exit_code == 0
    assert result.output == (
        '[1 Length-delimited]: (2 bytes)\n'
        '    [13 Varint]: 105 (0x69)\n'
    )


def test_base64_input():
    result = invoke(['--base64'], 'CJYB\n')
    assert result.exit_code == 0
    assert result.output == '[1 Varint]: 150 (0x96)\n'


def test_file_input_with_indent(tmp_path):
    path = tmp_path / 'payload.bin'
    path.write_bytes(b'\x0a\x02hi')
    result = CliRunner().invoke(main, ['--indent', '2', str(path)])
    assert result.exit_code == 0
    assert result.output == (
        '[1 Length-delimited]: (2 bytes)\n'
        '  [13 Varint]: 105 (0x69)\n'
    )


def test_decode_error_shows_prefix():
    result = invoke(['--hex'], '08 01 0f')
    assert result.exit_code == 1
    assert '[1 Varint]: 1 (0x1)\n' in result.output
    assert 'UnknownWireType' in result.output


def test_max_depth_option():
    result = invoke(['--hex', '--max-depth', '1'], '0a 04 0a 02 08 01')
    assert result.exit_code == 1
    assert 'MaxDepthExceeded' in result.output


def test_invalid_hex():
    result = invoke(['--hex'], 'zz')
    assert result.exit_code == 1
    assert 'not valid hex' in result.output


def test_scan_budget_options():
    result = invoke(['--hex', '--scan-budget', '0'], '0a 02 08 01')
    assert result.exit_code == 0
    assert '[1 Length-delimited]: (2 bytes) [hex] 0801\n' in result.output
    result = invoke(
        ['--hex', '--scan-budget', '0', '--no-scan-budget'], '0a 02 08 01'
    )
    assert result.exit_code == 0
    assert '    [1 Varint]: 1 (0x1)\n' in result.output


def test_deep_nesting_with_large_max_depth():
    data = b'\x08\x01'
    for _ in range(600):
        length = len(data)
        prefix = bytearray()
        while length > 0x7f:
            prefix.append(0x80 | (length & 0x7f))
            length >>= 7
        prefix.append(length)
        data = b'\x0a' + bytes(prefix) + data
    result = invoke(['--max-depth', '1000'], data)
    assert result.exit_code == 1
    assert 'MaxDepthExceeded' in result.output
