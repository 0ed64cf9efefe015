# espressoreader

`espressoreader` follows two sources of rollup inputs and turns them into
epochs and inputs for a node's repository:

* an **EVM base layer**, from which it reads `InputAdded` events of the input
  box, claim acceptance events of each application's consensus contract and
  `OutputExecuted` events of the application contract;
* an **Espresso sequencer**, from which it reads signed EIP-712 transactions
  in one namespace, checks their nonces and stores them as inputs, stamped
  with the L1 block that the Espresso header reports as finalized.

Inputs are grouped into epochs of a fixed number of blocks. Epochs are closed
when inputs or the block range move past them, and a submitted claim is
marked accepted once the consensus contract reports its acceptance.

Everything that talks to the network or the repository is asynchronous
(`asyncio`).

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

Python 3.11 or later is required. The runtime dependencies are
`pycryptodome` (Keccak-256) and `aiohttp` (the Espresso client and the nonce
service).

## Modules

| Module | Contents |
| --- | --- |
| `espressoreader.models` | `Application`, `Epoch`, `Input`, `Output`, `Header`, `FilterOpts`, the event records `InputAdded`, `ClaimAcceptance`, `OutputExecuted`, the enums `EpochStatus`, `InputCompletionStatus`, `DefaultBlock`, `AppContracts`, `SubscriptionError`, the helpers `hex_to_address` and `hex_to_hash`, and the protocols the readers are written against: `EthClient`, `EthWsClient`, `Subscription`, `InputSource`, `ConsensusContract`, `ApplicationContract`, `ContractFactory`, `EvmReaderRepository`. |
| `espressoreader.util` | `calculate_epoch_index`, `apps_to_addresses`, `insert_sorted`, `index_apps` and the key functions `by_last_processed_block`, `key_by_last_claim_check`, `key_by_iconsensus`. |
| `espressoreader.abi` | `EvmAdvance` with `encode_evm_advance`, `decode_evm_advance` and `modify_index_in_raw`. |
| `espressoreader.crypto` | `keccak256`, `typed_data_hash` (EIP-712), `ecrecover` and `pubkey_to_address` (secp256k1). |
| `espressoreader.extract` | `extract_sig_and_data`, which decodes a base64 JSON envelope, hashes its typed data and recovers the signer into a `SignedTransaction` (`msg_sender`, `typed_data`, `sig_hash`); malformed input raises `ExtractError`. |
| `espressoreader.inputs` | `InputReader` (`check_for_new_inputs`, `read_and_store_inputs`, epoch-length cache) and `get_epoch_length`. |
| `espressoreader.claims` | `ClaimReader.check_for_claim_status`. |
| `espressoreader.outputs` | `OutputReader.check_for_output_execution`. |
| `espressoreader.retrypolicy` | `ApplicationWithRetryPolicy`, `ConsensusWithRetryPolicy`, `EthClientWithRetryPolicy`, `EthWsClientWithRetryPolicy`, `InputSourceWithRetryPolicy`: each retries a failing call up to `max_retries` more times, waiting `delay` seconds between attempts, then re-raises the last error. |
| `espressoreader.evmreader` | `EvmReader`, which subscribes to new heads, binds each running application's contracts (checking the configured consensus address against the deployed one) and runs the input, claim and output passes on every block. A failed subscription is restarted. |
| `espressoreader.espresso_db` | `Database`, a SQLite connection, with `setup_espresso_db`, `get_last_processed_espresso_block` and `update_last_processed_espresso_block`. |
| `espressoreader.espresso_client` | `EspressoClient` for the sequencer's query API (`fetch_latest_block_height`, `fetch_transactions_in_block`, `fetch_header`, `fetch_headers_by_range`, `submit_transaction`), plus `parse_l1_finalized`, `ns_tables_from_headers`, `extract_namespaces` and `L1Finalized`. |
| `espressoreader.espresso_reader` | `EspressoReader`. When an application is more than 100 Espresso blocks behind it bootstraps, scanning headers in batches of 100 and reading only blocks whose namespace table holds its namespace; otherwise it reads block by block (`process_block`). |
| `espressoreader.nonce_service` | `NonceService`, an aiohttp service with `POST /nonce` (answers `{"nonce": n}` for an `app_contract` and `msg_sender`) and `POST /submit` (forwards the body to Espresso and answers `{"id": <signature hash>}`); `create_app` builds the application, `serve(host, port)` runs it. |
| `espressoreader.configgen` | Markdown documentation for the node's environment variables: `Env`, `read_toml`, `decode_toml`, `sort_config`, `render_docs`, `generate_docs_file`, `main`. |

## Examples

Epoch indexes follow from the epoch length:

```python
from espressoreader.util import calculate_epoch_index

calculate_epoch_index(10, 25)   # 2
calculate_epoch_index(10, 9)    # 0
```

Re-indexing an encoded input:

```python
from espressoreader.abi import EvmAdvance, decode_evm_advance, encode_evm_advance, modify_index_in_raw

raw = encode_evm_advance(EvmAdvance(
    chain_id=1,
    app_contract="0x2e663fe9ae92275242406a185aa4fc8174339d3e",
    msg_sender="0x00000000000000000000000000000000deadbeef",
    block_number=17, block_timestamp=0, prev_randao=0, index=0,
    payload=b"hello",
))
decode_evm_advance(modify_index_in_raw(raw, 5)).index   # 5
```

Decoding a transaction taken from an Espresso block:

```python
from espressoreader.extract import ExtractError, extract_sig_and_data

try:
    signed = extract_sig_and_data(raw_payload)
    print(signed.msg_sender, signed.sig_hash)
except ExtractError as exc:
    print(f"rejected: {exc}")
```

## Configuration documentation

Environment variables are described in a TOML file with one table per topic
and one entry per variable, each with a `go-type`, a `description` and an
optional string `default`. To turn it into Markdown:

```
espressoreader-configgen --config Config.toml --docs config.md
```

Without options it reads `Config.toml` and writes `../../../docs/config.md`.
Variables are sorted by topic and then by name so the output is stable; an
entry without a type or a description raises `ValueError`.

## What the package does not do

* It has no implementation of the repository: `EvmReaderRepository` (and the
  Espresso nonce methods the reader and the nonce service call) are
  protocols you supply. `espresso_db` only manages its own bookkeeping
  tables in SQLite.
* It has no Ethereum JSON-RPC client or contract bindings: `EthClient`,
  `EthWsClient`, `InputSource` and `ContractFactory` must be provided by the
  caller.
* It reads no node configuration from the environment and has no command
  that starts the readers or the nonce service; they are started from your
  own code with `asyncio`.