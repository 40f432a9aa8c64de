# coding=utf-8
"""Click command line for dumping protobuf wire data without a schema."""
import base64
import binascii
import logging

import click

from deproto import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_SCAN_BUDGET,
    DecodeError,
    decode_fields,
    render_fields,
)

logger = logging.getLogger('deproto.cli')


def _configure_logging(verbosity):
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logging.basicConfig(
        level=level,
        format='%(levelname)s %(name)s: %(message)s',
    )


def _read_input(source, input_format):
    """Read the source stream and convert it to the bytes to decode."""
    raw = source.read()
    if input_format == 'hex':
        try:
            return bytes.fromhex(raw.decode('ascii'))
        except (UnicodeDecodeError, ValueError) as ex:
            raise click.ClickException(f'Input is not valid hex: {ex}')
    if input_format == 'base64':
        try:
            return base64.b64decode(b''.join(raw.split()), validate=True)
        except binascii.Error as ex:
            raise click.ClickException(f'Input is not valid base64: {ex}')
    return raw


@click.command()
@click.argument('source', type=click.File('rb'), default='-')
@click.option(
    '--raw', 'input_format', flag_value='raw', default=True,
    help='Input is raw protobuf bytes (default).',
)
@click.option(
    '--hex', 'input_format', flag_value='hex',
    help='Input is hexadecimal text; whitespace is ignored.',
)
@click.option(
    '--base64', 'input_format', flag_value='base64',
    help='Input is base64 text; whitespace is ignored.',
)
@click.option(
    '--max-depth', type=click.IntRange(min=0), default=DEFAULT_MAX_DEPTH,
    show_default=True,
    help='Maximum nesting of sub-messages before giving up.',
)
@click.option(
    '--scan-budget', type=click.IntRange(min=0), default=DEFAULT_SCAN_BUDGET,
    show_default=True,
    help='Payload bytes the sub-message heuristic may re-scan.',
)
@click.option(
    '--no-scan-budget', is_flag=True,
    help='Let the sub-message heuristic re-scan without limit.',
)
@click.option(
    '--indent', type=click.IntRange(min=0), default=4, show_default=True,
    help='Spaces per nesting level.',
)
@click.option('-v', '--verbose', count=True, help='Log more (repeatable).')
@click.version_option(package_name='deproto')
def main(
        source,
        input_format,
        max_depth,
        scan_budget,
        no_scan_budget,
        indent,
        verbose,
):
    """Decode protobuf wire data from SOURCE (default stdin) and print it.

    No schema is needed: length-delimited values are shown as nested
    messages, quoted text, or hex, whichever fits first.
    """
    _configure_logging(verbose)
    data = _read_input(source, input_format)
    logger.info('Decoding %d bytes', len(data))
    if no_scan_budget:
        scan_budget = None
    try:
        fields = decode_fields(
            data, max_depth=max_depth, scan_budget=scan_budget
        )
    except DecodeError as ex:
        click.echo(render_fields(ex.fields, indent=indent), nl=False)
        raise click.ClickException(f'{type(ex).__name__}: {ex}')
    logger.info('Decoded %d top-level fields', len(fields))
    click.echo(render_fields(fields, indent=indent), nl=False)


if __name__ == '__main__':
    main()
