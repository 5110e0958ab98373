"""Export differential-expression results to Excel/CSV and write .h5ad.

This module assembles the per-contrast significance tables (protein metadata,
logFC, se, df, t, p and adjusted p-values, missingness), the heatmap input
matrix of significant proteins and the per-protein detail series joining
peptide- and protein-level values by sample.
"""
import re
import warnings
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from proteodiff.analysis.msqrob_pipeline import contrast_table
from proteodiff.utils.utils import log_info, log_time

_SHEET_FORBIDDEN = re.compile(r"[\[\]:*?/\\]")


def _sheet_name(name: str, used: set) -> str:
    """Excel sheet names: no []:*?/\\ and at most 31 characters, unique."""
    base = _SHEET_FORBIDDEN.sub("_", name).strip() or "contrast"
    candidate, i = base[:31], 1
    while candidate in used:
        suffix = f"_{i}"
        candidate = base[:31 - len(suffix)] + suffix
        i += 1
    used.add(candidate)
    return candidate


class DEExporter:
    def __init__(
        self,
        adata,
        output_path,
        use_xlsx=True,
        sig_threshold=0.05,
        config: Optional[dict] = None,
    ):
        """Excel/CSV and .h5ad exporter for an analysed `AnnData`."""
        self.adata = adata
        self.output_path = Path(output_path)
        self.use_xlsx = use_xlsx
        self.sig_threshold = sig_threshold
        self.contrasts: List[str] = list(self.adata.uns.get("contrast_names", []))
        self.config = config or {}

    def _protein_meta(self) -> pd.DataFrame:
        cols = [c for c in ["N_PEPTIDES", "PEPTIDES", "HAS_MODEL"] if c in self.adata.var.columns]
        meta = self.adata.var[cols].copy()
        meta.index = meta.index.astype(str)
        meta.index.name = "protein"
        return meta

    def significance_table(self, contrast: str) -> pd.DataFrame:
        """Protein metadata + logFC, se, df, t, pval, adjPval of one contrast, most significant first."""
        res = contrast_table(self.adata, contrast)
        table = pd.concat([self._protein_meta(), res], axis=1)
        miss = self.adata.uns.get("missingness")
        if miss is not None:
            miss = pd.DataFrame(miss)
            miss.index = miss.index.astype(str)
            table = pd.concat([table, miss.add_prefix("Missing_")], axis=1)
        return table.sort_values("pval", na_position="last", kind="mergesort")

    def summary_table(self) -> pd.DataFrame:
        """All contrasts side by side (one column block per statistic and contrast)."""
        blocks = [self._protein_meta()]
        for name in self.contrasts:
            res = contrast_table(self.adata, name)
            blocks.append(res[["logFC", "pval", "adjPval"]].add_suffix(f"_{name}"))
        X = pd.DataFrame(np.asarray(self.adata.X, dtype=float).T,
                         index=self.adata.var_names.astype(str),
                         columns=self.adata.obs_names.astype(str))
        blocks.append(X.add_prefix("log2_"))
        return pd.concat(blocks, axis=1)

    def heatmap_matrix(self, contrast: Optional[str] = None, threshold: Optional[float] = None) -> pd.DataFrame:
        """
        Row-centered protein values (proteins x samples) restricted to proteins whose
        adjPval is below the threshold, for one contrast or for any contrast.
        """
        threshold = self.sig_threshold if threshold is None else threshold
        names = [contrast] if contrast is not None else self.contrasts
        selected = np.zeros(self.adata.n_vars, dtype=bool)
        for name in names:
            adj = contrast_table(self.adata, name)["adjPval"].to_numpy()
            with np.errstate(invalid="ignore"):
                selected |= adj < threshold

        X = np.asarray(self.adata.X, dtype=float).T[selected]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            centered = X - np.nanmean(X, axis=1, keepdims=True) if X.size else X
        return pd.DataFrame(
            centered,
            index=self.adata.var_names.astype(str)[selected],
            columns=self.adata.obs_names.astype(str),
        )

    def protein_detail(self, protein_id: str, stage: str = "normalized") -> pd.DataFrame:
        """
        Long table of one protein: its peptides' values (from the given peptide stage)
        and the summarized protein value, per sample, with the sample factors.
        """
        var_names = list(self.adata.var_names.astype(str))
        if protein_id not in var_names:
            raise KeyError(f"Unknown protein '{protein_id}'")
        obs = self.adata.obs.drop(columns=["HEADER"], errors="ignore")
        samples = list(self.adata.obs_names.astype(str))

        frames = []
        pep = self.adata.uns.get("peptides")
        if pep is not None:
            rows = np.asarray(pep["protein_index"]) == protein_id
            values = pd.DataFrame(np.asarray(pep[stage])[rows], columns=list(pep["cols"]),
                                  index=np.asarray(pep["rows"])[rows])
            long = values.reset_index(names="feature").melt(id_vars="feature", var_name="sample", value_name="value")
            long["level"] = "peptide"
            frames.append(long)

        j = var_names.index(protein_id)
        protein = pd.DataFrame({
            "feature": protein_id,
            "sample": samples,
            "value": np.asarray(self.adata.X, dtype=float)[:, j],
            "level": "protein",
        })
        frames.append(protein)

        detail = pd.concat(frames, ignore_index=True)
        detail = detail.merge(obs, left_on="sample", right_index=True, how="left")
        return detail[["level", "feature", "sample", "value"] + list(obs.columns)]

    def _export_excel(self, tables: Dict[str, Optional[pd.DataFrame]], readme: str) -> Path:
        """Write selected tables to a single XLSX with a README sheet."""
        out_file = self.output_path.with_suffix(".xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            pd.DataFrame({"README": readme.split("\n")}).to_excel(
                writer, index=False, sheet_name="README"
            )
            used = {"README"}
            for name, df in tables.items():
                if df is None:
                    continue
                sheet = _sheet_name(name, used)
                df.to_excel(writer, sheet_name=sheet)
                writer.sheets[sheet].set_column(0, df.shape[1], 14)
        return out_file

    def _export_csvs(self, tables: Dict[str, Optional[pd.DataFrame]]) -> Path:
        """Write each table to a separate CSV with a shared filename prefix."""
        prefix = self.output_path.with_suffix("")
        for name, df in tables.items():
            if df is not None:
                df.to_csv(f"{prefix}_{_SHEET_FORBIDDEN.sub('_', name).replace(' ', '_')}.csv")
        return prefix.parent

    @log_time("Differential Expression - exporting table")
    def export(self) -> Path:
        """Export Summary, one significance table per contrast and the heatmap matrix as xlsx (or csv)."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        tables: Dict[str, Optional[pd.DataFrame]] = {"Summary": self.summary_table()}
        for name in self.contrasts:
            tables[name] = self.significance_table(name)
        if self.contrasts:
            heatmap = self.heatmap_matrix()
            tables["Heatmap"] = heatmap
            log_info(f"Heatmap: {heatmap.shape[0]} proteins with adjPval < {self.sig_threshold}")

        analysis = self.adata.uns.get("analysis", {})
        readme = (
            f"proteodiff results ({datetime.now().isoformat(timespec='seconds')})\n"
            f"Formula: {analysis.get('formula', '')} (mode: {analysis.get('mode', '')})\n"
            f"Contrasts: {', '.join(self.contrasts) or 'none'}\n"
            "\n"
            "Sheet Descriptions:\n"
            "- Summary: protein metadata, logFC/pval/adjPval per contrast, summarized log2 values.\n"
            "- <contrast>: logFC, se, df, t, pval, adjPval (Benjamini-Hochberg), missing counts.\n"
            f"- Heatmap: row-centered values of proteins with adjPval < {self.sig_threshold}.\n"
        )

        if self.use_xlsx:
            return self._export_excel(tables, readme)
        return self._export_csvs(tables)

    @log_time("Exporting .h5ad")
    def export_adata(self, h5ad_path: str) -> None:
        """Write the AnnData object, stamped with the package version."""
        meta = dict(self.adata.uns.get("proteodiff", {}) or {})
        try:
            version = _pkg_version("proteodiff")
        except PackageNotFoundError:
            version = "0+unknown"
        meta.setdefault("version", version)
        meta.setdefault("created_at", datetime.now().isoformat(timespec="seconds"))
        self.adata.uns["proteodiff"] = meta

        Path(h5ad_path).parent.mkdir(parents=True, exist_ok=True)
        self.adata.write(h5ad_path, compression="gzip")
