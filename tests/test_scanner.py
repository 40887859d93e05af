"""Tests for the import scanner."""

import pytest

from sandpit.scanner import extract_package_name, scan_files, scan_source, should_scan


class TestExtractPackageName:
    @pytest.mark.parametrize(
        "spec,expected",
        [
            ("@scope/pkg/sub", "@scope/pkg"),
            ("@scope/pkg", "@scope/pkg"),
            ("lodash/fp", "lodash"),
            ("react", "react"),
            ("./utils", None),
            ("../lib/x", None),
            ("/abs/path", None),
            ("@scope", None),
            ("@/components/Button", None),
            ("", None),
            ("${base}/locale.js", None),
            ("@scope/${name}", None),
        ],
    )
    def test_mapping(self, spec, expected) -> None:
        assert extract_package_name(spec) == expected


class TestScanSource:
    def test_es_imports(self) -> None:
        src = """
import React from 'react';
import { create } from "zustand";
import * as d3 from 'd3/dist/d3';
import type { Foo } from '@acme/types/foo';
"""
        assert scan_source(src) == {"react", "zustand", "d3", "@acme/types"}

    def test_multiline_named_import(self) -> None:
        src = "import {\n  a,\n  b,\n} from 'lodash-es';\n"
        assert scan_source(src) == {"lodash-es"}

    def test_side_effect_dynamic_and_require(self) -> None:
        src = """
import 'normalize.css';
const chart = await import('chart.js/auto');
const fs = require("fs");
const x = require( 'express' );
"""
        assert scan_source(src) == {"normalize.css", "chart.js", "fs", "express"}

    def test_reexport(self) -> None:
        assert scan_source("export { default } from '@mui/material/Button';") == {"@mui/material"}

    def test_relative_specifiers_never_produce_names(self) -> None:
        src = """
import a from './a';
import b from '../b';
import c from '/c';
const d = require('./d');
"""
        assert scan_source(src) == set()

    def test_computed_require_is_ignored(self) -> None:
        assert scan_source("const m = require(name);") == set()

    def test_interpolated_template_specifier_is_ignored(self) -> None:
        src = "const m = await import(`${base}/locale.js`);\nconst n = await import(`dayjs/locale/de`);\n"
        assert scan_source(src) == {"dayjs"}

    def test_duplicates_collapse(self) -> None:
        src = "import a from 'axios';\nimport b from 'axios/lib/x';\nrequire('axios');"
        assert scan_source(src) == {"axios"}

    def test_no_name_starts_with_dot_or_slash(self) -> None:
        src = "import a from './x'; import b from '/y'; import c from 'z'; import('./w');"
        assert all(not n.startswith((".", "/")) for n in scan_source(src))


class TestShouldScan:
    @pytest.mark.parametrize("path", ["src/App.tsx", "main.js", "lib/x.mjs", "a/b.cjs", "c.ts", "d.jsx", "App.vue"])
    def test_source_files(self, path) -> None:
        assert should_scan(path)

    @pytest.mark.parametrize(
        "path",
        ["README.md", "package.json", "styles.css", "node_modules/react/index.js", "web/node_modules/x/y.ts", "dist/app.js"],
    )
    def test_skipped(self, path) -> None:
        assert not should_scan(path)


def test_scan_files_aggregates_and_skips_vendor() -> None:
    files = {
        "src/App.tsx": "import { motion } from 'framer-motion';",
        "src/api.ts": "import axios from 'axios';",
        "node_modules/axios/index.js": "require('follow-redirects');",
        "notes.md": "import x from 'not-code';",
    }
    assert scan_files(files) == {"framer-motion", "axios"}
