# (C) 2025 Noverse. All Rights Reserved.
# https://github.com/nohuto
# https://discord.gg/E2ybG4j9jU

import argparse, codecs, copy, enum, io, json, logging, re, sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
try:
    import yaml
except ImportError:
    yaml = None
from xml.etree import ElementTree as et

from defusedxml import ElementTree as safe_et
from defusedxml.common import DefusedXmlException

LOG = logging.getLogger("wdac_syncml")
GUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
POLICY_ROOT_TAG = "SiPolicy"
POLICY_ID_ATTRIBUTE = "PolicyID"
DEFAULT_POLICY_NAME = "WDACPolicy"
DEFAULT_OUTPUT_NAME = "wdac-fleet-policy.xml"
OUTPUT_MIME_TYPE = "application/xml"
LOC_URI_TEMPLATE = "./Vendor/MSFT/ApplicationControl/Policies/{guid}/Policy"
TRIM_PATTERN = re.compile(r"^[\s\ufeff]+|[\s\ufeff]+$")
XML_NAMESPACE = "http://www.w3.org/XML/1998/namespace"
CDATA_END = "]]>"
SYNCML_TEMPLATE = """<Replace>
  <Item>
    <Target>
      <LocURI>{loc_uri}</LocURI>
    </Target>
    <Meta>
      <Format xmlns="syncml:metinf">chr</Format>
    </Meta>
    <Data><![CDATA[{policy_xml}]]></Data>
  </Item>
</Replace>"""

# (prefix, uri) pairs in declaration order
Declarations = Tuple[Tuple[str, str], ...]


class ErrorKind(enum.Enum):
    EMPTY_INPUT = "EmptyInput"
    MALFORMED_XML = "MalformedXml"
    MISSING_POLICY_ROOT = "MissingPolicyRoot"
    MISSING_GUID = "MissingGuid"
    INVALID_GUID_FORMAT = "InvalidGuidFormat"


ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.EMPTY_INPUT: "Please provide WDAC policy XML content",
    ErrorKind.MALFORMED_XML: "Invalid XML format. Please check your XML file.",
    ErrorKind.MISSING_POLICY_ROOT: "SiPolicy element not found. Please ensure this is a valid WDAC policy XML.",
    ErrorKind.MISSING_GUID: (
        "Policy GUID is required. Please enter a GUID or ensure your policy XML contains a PolicyID attribute."
    ),
    ErrorKind.INVALID_GUID_FORMAT: (
        "Invalid GUID format. Please use a valid GUID (e.g., from PowerShell: [guid]::NewGuid())"
    ),
}


class ConversionError(ValueError):
    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class ConversionRequest:
    raw_xml: str
    policy_guid: Optional[str] = None
    policy_name: Optional[str] = None


@dataclass(frozen=True)
class ConversionResult:
    loc_uri: str
    serialized_policy: str
    output_document: str
    policy_guid: str
    policy_name: str


@dataclass(frozen=True)
class ConversionFailure:
    kind: ErrorKind
    message: str

    def raise_error(self) -> None:
        raise ConversionError(self.kind, self.message)


@dataclass(frozen=True)
class PolicyRoot:
    """The located SiPolicy element plus the namespace context it was parsed with.

    ``declared`` holds the declarations written on each element of the
    document, ``scopes`` the declarations in scope at each element (inherited
    ones first). Both are keyed by element.
    """

    element: et.Element
    declared: Dict[et.Element, Declarations]
    scopes: Dict[et.Element, Declarations]


Outcome = Union[ConversionResult, ConversionFailure]


def _failure(kind: ErrorKind, detail: Optional[str] = None) -> ConversionFailure:
    message = ERROR_MESSAGES[kind]
    if detail:
        message = f"{message} ({detail})"
    return ConversionFailure(kind=kind, message=message)


def _trim(value: Optional[str]) -> str:
    # str.strip() keeps U+FEFF, pasted text often starts with one
    return TRIM_PATTERN.sub("", value or "")


def _local_name(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def parse_policy(raw_xml: str) -> Union[PolicyRoot, ConversionFailure]:
    declared: Dict[et.Element, Declarations] = {}
    scopes: Dict[et.Element, Declarations] = {}
    stack: List[Declarations] = [()]
    pending: List[Tuple[str, str]] = []
    matches: List[et.Element] = []
    parser = safe_et.DefusedXMLParser(target=et.TreeBuilder(insert_comments=True, insert_pis=True))
    try:
        for event, item in safe_et.iterparse(
            io.StringIO(raw_xml), events=("start-ns", "start", "end"), parser=parser
        ):
            if event == "start-ns":
                pending.append(item)
            elif event == "start":
                own = tuple(pending)
                pending = []
                scope = stack[-1] + own if own else stack[-1]
                stack.append(scope)
                declared[item] = own
                scopes[item] = scope
                if _local_name(item.tag) == POLICY_ROOT_TAG:
                    matches.append(item)
            else:
                stack.pop()
    except safe_et.ParseError as exc:
        LOG.debug(f"XML parser rejected input: {exc}")
        return _failure(ErrorKind.MALFORMED_XML, str(exc))
    except DefusedXmlException as exc:
        LOG.debug(f"Refusing unsafe XML construct: {exc!r}")
        return _failure(ErrorKind.MALFORMED_XML, f"unsafe XML construct: {type(exc).__name__}")

    if not matches:
        return _failure(ErrorKind.MISSING_POLICY_ROOT)
    if len(matches) > 1:
        LOG.warning(f"Found {len(matches)} {POLICY_ROOT_TAG} elements, converting the first one only.")
    return PolicyRoot(element=matches[0], declared=declared, scopes=scopes)


def is_valid_guid(value: str) -> bool:
    return GUID_PATTERN.fullmatch(value) is not None


def resolve_guid(policy: PolicyRoot, explicit: Optional[str] = None) -> Union[str, ConversionFailure]:
    guid = _trim(explicit)
    if guid:
        LOG.debug(f"Using explicit policy GUID {guid}")
    else:
        guid = policy.element.get(POLICY_ID_ATTRIBUTE) or ""
        if not guid:
            return _failure(ErrorKind.MISSING_GUID)
        LOG.debug(f"Derived policy GUID {guid} from {POLICY_ID_ATTRIBUTE} attribute")
    if not is_valid_guid(guid):
        return _failure(ErrorKind.INVALID_GUID_FORMAT)
    return guid


def resolve_name(explicit: Optional[str] = None) -> str:
    return _trim(explicit) or DEFAULT_POLICY_NAME


def build_loc_uri(guid: str) -> str:
    return LOC_URI_TEMPLATE.format(guid=guid)


def _collapse(declarations: Declarations) -> Dict[str, str]:
    # later declarations of a prefix shadow earlier ones
    collapsed: Dict[str, str] = {}
    for prefix, uri in declarations:
        collapsed.pop(prefix, None)
        collapsed[prefix] = uri
    return collapsed


def _source_name(name: str, namespaces: Dict[str, str], *, attribute: bool = False) -> str:
    if not name.startswith("{"):
        return name
    uri, local = name[1:].split("}", 1)
    if uri == XML_NAMESPACE:
        return f"xml:{local}"
    for prefix, declared_uri in reversed(list(namespaces.items())):
        if declared_uri != uri:
            continue
        if not prefix:
            # the default namespace never applies to attributes
            if attribute:
                continue
            return local
        return f"{prefix}:{local}"
    raise ValueError(f"No namespace declaration in scope for '{name}'")


def _declaration_attributes(declarations: Dict[str, str]) -> Dict[str, str]:
    return {(f"xmlns:{prefix}" if prefix else "xmlns"): uri for prefix, uri in declarations.items()}


def serialize_policy(policy: PolicyRoot) -> str:
    root = policy.element
    clone = copy.deepcopy(root)
    clone.tail = None
    for original, copied in zip(root.iter(), clone.iter()):
        if original.tag is et.Comment or original.tag is et.ProcessingInstruction:
            continue
        namespaces = _collapse(policy.scopes[original])
        if original is root:
            # declarations made on ancestors outside the subtree move onto its root
            written = _declaration_attributes(namespaces)
        else:
            written = _declaration_attributes(_collapse(policy.declared[original]))
        attributes = dict(written)
        for key, value in original.attrib.items():
            attributes[_source_name(key, namespaces, attribute=True)] = value
        copied.tag = _source_name(original.tag, namespaces)
        copied.attrib.clear()
        copied.attrib.update(attributes)
    return et.tostring(clone, encoding="unicode", method="xml")


def build_syncml_document(loc_uri: str, policy_xml: str) -> str:
    if CDATA_END in policy_xml:
        LOG.debug(f"Policy text contains '{CDATA_END}', the CDATA section will end early.")
    return SYNCML_TEMPLATE.format(loc_uri=loc_uri, policy_xml=policy_xml)


def convert(request: ConversionRequest) -> Outcome:
    """Turn a WDAC policy document into a SyncML ``Replace`` command.

    Returns a ``ConversionFailure`` for the first violated precondition;
    nothing is raised for bad input.
    """
    if not _trim(request.raw_xml):
        return _failure(ErrorKind.EMPTY_INPUT)

    policy = parse_policy(request.raw_xml)
    if isinstance(policy, ConversionFailure):
        return policy

    guid = resolve_guid(policy, request.policy_guid)
    if isinstance(guid, ConversionFailure):
        return guid
    name = resolve_name(request.policy_name)

    loc_uri = build_loc_uri(guid)
    policy_xml = serialize_policy(policy)
    LOG.debug(f"Serialized {len(policy_xml)} characters of policy {name} for {loc_uri}")
    return ConversionResult(
        loc_uri=loc_uri,
        serialized_policy=policy_xml,
        output_document=build_syncml_document(loc_uri, policy_xml),
        policy_guid=guid,
        policy_name=name,
    )


def convert_text(raw_xml: str, policy_guid: Optional[str] = None, policy_name: Optional[str] = None) -> Outcome:
    return convert(ConversionRequest(raw_xml=raw_xml, policy_guid=policy_guid, policy_name=policy_name))


def decode_policy_bytes(raw: bytes) -> str:
    if raw.startswith(codecs.BOM_UTF8):
        return raw.decode("utf-8-sig")
    if raw.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return raw.decode("utf-16")
    # no BOM: a UTF-16 "<" leaves a NUL byte beside it
    if raw[:2] == b"<\x00":
        return raw.decode("utf-16-le")
    if raw[:2] == b"\x00<":
        return raw.decode("utf-16-be")
    return raw.decode("utf-8")


def read_policy_text(path: Path) -> str:
    if str(path) == "-":
        return decode_policy_bytes(sys.stdin.buffer.read())
    return decode_policy_bytes(path.read_bytes())


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert a WDAC policy XML into a SyncML Replace command for MDM deployment.",
    )
    parser.add_argument(
        "input",
        type=Path,
        help="Path to the WDAC policy XML. Use '-' to read from stdin.",
    )
    parser.add_argument(
        "-g",
        "--guid",
        help="Policy GUID used in the LocURI. Defaults to the PolicyID attribute of SiPolicy.",
    )
    parser.add_argument(
        "-n",
        "--name",
        help=f"Display name for the policy. Defaults to {DEFAULT_POLICY_NAME}.",
    )
    parser.add_argument(
        "--format",
        choices=("xml", "json", "yaml"),
        default="xml",
        help="xml writes the SyncML payload, json/yaml write a summary record that embeds it.",
    )
    destination = parser.add_mutually_exclusive_group()
    destination.add_argument(
        "-o",
        "--output",
        type=Path,
        help=f"Path to save the payload. Defaults to {DEFAULT_OUTPUT_NAME} (extension follows --format).",
    )
    destination.add_argument(
        "--stdout",
        action="store_true",
        help="Print the payload instead of writing a file.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser


def build_summary(result: ConversionResult) -> Dict[str, str]:
    return {
        "PolicyGUID": result.policy_guid,
        "PolicyName": result.policy_name,
        "LocURI": result.loc_uri,
        "MimeType": OUTPUT_MIME_TYPE,
        "OutputDocument": result.output_document,
    }


def render_payload(result: ConversionResult, *, fmt: str) -> str:
    if fmt == "xml":
        return result.output_document
    summary = build_summary(result)
    if fmt == "yaml":
        if yaml is None:
            raise SystemExit("YAML output requires the 'PyYAML' package. Install it with 'pip install pyyaml'.")
        return yaml.safe_dump(
            summary,
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
    return json.dumps(summary, indent=2)


def write_payload(path: Path, result: ConversionResult, *, fmt: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_payload(result, fmt=fmt), encoding="utf-8")


def default_output_path(fmt: str) -> Path:
    return Path(DEFAULT_OUTPUT_NAME).with_suffix(f".{fmt}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(message)s")

    try:
        raw_xml = read_policy_text(args.input)
    except OSError as exc:
        raise SystemExit(f"Unable to read '{args.input}': {exc}")
    except UnicodeDecodeError as exc:
        raise SystemExit(f"Unable to decode '{args.input}': {exc}")

    outcome = convert_text(raw_xml, policy_guid=args.guid, policy_name=args.name)
    if isinstance(outcome, ConversionFailure):
        LOG.error(outcome.message)
        return 1

    if args.stdout:
        print(render_payload(outcome, fmt=args.format))
        return 0

    output_path = args.output or default_output_path(args.format)
    write_payload(output_path, outcome, fmt=args.format)

    print(f"Wrote {outcome.policy_name} ({outcome.policy_guid}) to {output_path}")
    print(f"LocURI: {outcome.loc_uri}")

    return 0

if __name__ == "__main__":
    raise SystemExit(main())
