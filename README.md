# devrestore

Helpers for restoring firmware to devices: readers and writers for the
firmware container formats a restore handles, and clients for the small
protocols a device speaks while it is being restored. The package uses only
the Python standard library.

## Modules

- `devrestore.ftab`: `parse_ftab(data)` reads an `ftab` firmware table into
  an `Ftab`. `Ftab.get_entry(tag)` returns an entry's bytes (raising
  `KeyError` if there is none), `Ftab.add_entry(tag, data)` appends an entry
  and lays out all offsets again, and `Ftab.to_bytes()` serialises the table.
  Tags may be given as four-character strings, four bytes or an integer.
  Malformed input raises `FtabError`.
- `devrestore.fls`: `parse_fls(data)` splits a baseband `.fls` image into
  `FlsElement`s held by an `FlsFile`. `FlsFile.update_sig_blob(sigdata)`
  replaces the signature blob of the 0x0c element, and
  `FlsFile.insert_ticket(ticket)` puts a ticket, padded with 0xFF to a multiple
  of four bytes, in front of its data. `FlsFile.data` gives the rebuilt image.
  Errors raise `FlsError`.
- `devrestore.ace3`: `create_binary(uarp_fw, bdid, prev, tss)` builds an Ace3
  image for a board ID and product revision from a UARP super-binary, taking
  the ticket from `tss["USBPortController1,Ticket"]`. `crc_buffer(buffer, salt)`
  computes the image checksum, and `decode_keyed_archive(data)` turns an
  NSKeyedArchiver property list into plain Python objects. Errors raise
  `Ace3Error`.
- `devrestore.download`: `download_to_buffer(url)` returns the body of a URL
  as bytes; `download_to_file(url, filename, enable_progress)` saves it to a
  file, optionally printing percentages. An empty download raises
  `DownloadError` and leaves no file behind. Certificate checks are turned
  off, so downloads from https hosts with untrusted certificates succeed.
- `devrestore.asr`: `open_with_timeout(device)` connects to the ASR port and
  returns an `AsrClient`, which sends and receives XML property lists,
  answers out-of-band data requests in `perform_validation(file)` and streams
  an image with `send_payload(file)`, reporting progress through
  `set_progress_callback`. Errors raise `AsrError`.
- `devrestore.fdr`: `connect(device, FdrType.CTRL)` opens the FDR control
  channel, and `run_listener(client)` serves it: it answers pings, opens
  worker connections on sync messages (each served by its own thread) and
  forwards proxy connections to TCP hosts. Errors raise `FdrError`.
- `devrestore.common`: the `Mode` enumeration, `RestoreError`, file helpers
  (`read_file`, `write_file`, `mkdir_with_parents`, `get_temp_filename`,
  `path_get_basename`), `generate_guid`, `get_user_input`, and lenient
  accessors for property-list dictionaries (`plist_dict_get_uint`,
  `plist_dict_get_bool`, `plist_dict_copy_*`).
- `devrestore.log`: `info`, `error` and `debug` output, with
  `set_info_stream`, `set_error_stream` and `set_debug_stream` to redirect
  (or, given `None`, silence) each one, `set_debug_level`, `get_last_error`,
  `debug_plist` and `print_progress_bar`.

## Example

```python
from devrestore.ftab import parse_ftab

with open("firmware.ftab", "rb") as fh:
    table = parse_ftab(fh.read())

table.add_entry(b"rrko", b"\x00" * 16)
payload = table.get_entry(b"rrko")

with open("firmware-new.ftab", "wb") as fh:
    fh.write(table.to_bytes())
```

## Connections to the device

`devrestore.asr` and `devrestore.fdr` do not talk to hardware themselves. They
take a device object with a `connect(port)` method that returns a connection
with `send(data)`, `receive(max_size)` and `close()` and raises `OSError` on
failure. For FDR, `receive` also takes a `timeout` in seconds and raises
`TimeoutError` when it runs out.

## What the package does not do

There is no command-line tool and no complete restore procedure. The package
does not find or open devices over USB, does not switch devices between
modes, and does not request signing tickets; it provides the pieces listed
above for a program that does.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```