import unittest

from fakes import CID_V0, CID_V1, GATEWAYS

from ledger_scout.errors import MalformedIdentifier
from ledger_scout.gateways import GatewayResolver, parse_identifier


class ParseIdentifierTests(unittest.TestCase):
    def test_bare_content_hashes(self) -> None:
        for cid in (CID_V0, CID_V1):
            parsed = parse_identifier(cid)
            self.assertEqual(parsed.kind, "content_hash")
            self.assertEqual(parsed.content_hash, cid)

    def test_ipfs_scheme_keeps_path(self) -> None:
        parsed = parse_identifier(f"ipfs://{CID_V0}/metadata/7.json")

        self.assertEqual(parsed.kind, "content_hash")
        self.assertEqual(parsed.content_path, f"{CID_V0}/metadata/7.json")
        self.assertEqual(parsed.content_hash, CID_V0)

    def test_ipfs_scheme_with_redundant_prefix(self) -> None:
        parsed = parse_identifier(f"ipfs://ipfs/{CID_V1}")
        self.assertEqual(parsed.content_path, CID_V1)

    def test_gateway_url_extracts_hash(self) -> None:
        parsed = parse_identifier(f"https://ipfs.io/ipfs/{CID_V0}/1.json")

        self.assertEqual(parsed.kind, "url")
        self.assertEqual(parsed.url, f"https://ipfs.io/ipfs/{CID_V0}/1.json")
        self.assertEqual(parsed.content_path, f"{CID_V0}/1.json")

    def test_double_gateway_url_uses_inner_hash(self) -> None:
        raw = f"https://gateway.pinata.cloud/ipfs/https://ipfs.io/ipfs/{CID_V0}/1.json"

        parsed = parse_identifier(raw)

        self.assertEqual(parsed.content_path, f"{CID_V0}/1.json")

    def test_plain_url_has_no_content_path(self) -> None:
        parsed = parse_identifier("https://example.test/meta/1.json")

        self.assertEqual(parsed.kind, "url")
        self.assertIsNone(parsed.content_path)

    def test_data_uri(self) -> None:
        self.assertEqual(parse_identifier("data:application/json,{}").kind, "data")

    def test_malformed_identifiers(self) -> None:
        for raw in ("", "   ", "Qm123", "not a hash", "ipfs://", "ipfs://nothing-here", "ftp://host/file"):
            with self.subTest(raw=raw):
                with self.assertRaises(MalformedIdentifier):
                    parse_identifier(raw)


class GatewayResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = GatewayResolver(GATEWAYS)

    def test_content_hash_walks_mirrors_in_priority_order(self) -> None:
        urls = [self.resolver.resolve(CID_V0, i).url for i in range(len(GATEWAYS))]

        self.assertEqual(urls, [template.replace("{cid}", CID_V0) for template in GATEWAYS])
        self.assertIsNone(self.resolver.next_candidate(CID_V0, len(GATEWAYS)))

    def test_direct_url_is_probed_first_then_mirrors(self) -> None:
        url = f"https://origin.test/ipfs/{CID_V1}/2.json"

        candidates = self.resolver.candidates(url)

        self.assertEqual(candidates[0].url, url)
        self.assertTrue(candidates[0].probe)
        self.assertEqual(
            [c.url for c in candidates[1:]],
            [template.replace("{cid}", f"{CID_V1}/2.json") for template in GATEWAYS],
        )
        self.assertEqual([c.index for c in candidates], list(range(len(GATEWAYS) + 1)))

    def test_plain_url_has_a_single_candidate(self) -> None:
        candidates = self.resolver.candidates("https://example.test/meta/1.json")

        self.assertEqual(len(candidates), 1)
        self.assertIsNone(self.resolver.next_candidate("https://example.test/meta/1.json", 1))

    def test_probe_can_be_disabled(self) -> None:
        resolver = GatewayResolver(GATEWAYS, probe_direct_urls=False)
        self.assertFalse(resolver.candidates("https://example.test/a.json")[0].probe)

    def test_resolve_past_end_raises(self) -> None:
        with self.assertRaises(MalformedIdentifier):
            self.resolver.resolve(CID_V0, len(GATEWAYS))

    def test_negative_index_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.resolver.next_candidate(CID_V0, -1)

    def test_data_uri_has_no_candidates(self) -> None:
        with self.assertRaises(MalformedIdentifier):
            self.resolver.candidates("data:application/json,{}")

    def test_template_without_placeholder_appends_path(self) -> None:
        self.assertEqual(
            GatewayResolver.materialize("https://gw.test/ipfs/", f"{CID_V0}/1.json"),
            f"https://gw.test/ipfs/{CID_V0}/1.json",
        )

    def test_to_http_url(self) -> None:
        self.assertEqual(self.resolver.to_http_url(f"ipfs://{CID_V0}"), GATEWAYS[0].replace("{cid}", CID_V0))
        self.assertEqual(self.resolver.to_http_url("/local.png"), "/local.png")

    def test_empty_template_list_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            GatewayResolver(["", "  "])


if __name__ == "__main__":
    unittest.main()
