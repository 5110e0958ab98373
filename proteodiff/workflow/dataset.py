import warnings
from typing import List, Optional

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl
import pyarrow.csv as pv_csv

from proteodiff.utils.errors import SchemaMismatchError
from proteodiff.utils.harmonizer import DataHarmonizer
from proteodiff.utils.utils import log_info, log_time, polars_matrix_to_numpy
from proteodiff.workflow.preprocessing import Preprocessor

pl.Config.set_tbl_rows(100)
# Suppress the ImplicitModificationWarning from AnnData
warnings.filterwarnings("ignore", category=UserWarning, message=".*Transforming to str index.*")


class Dataset:
    """The main class for processing the dataset, loading raw data, and converting to AnnData."""
    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements
        """

        # Dataset-specific config
        dataset_cfg = kwargs.get("dataset", {}) or {}
        self.file_path = dataset_cfg.get("input_file", None)
        self.load_method = dataset_cfg.get("load_method", "polars")

        # Accept string OR list for exclude_samples
        raw_excl = dataset_cfg.get("exclude_samples")
        if raw_excl is None:
            self.exclude_samples = set()
        elif isinstance(raw_excl, str):
            self.exclude_samples = {raw_excl.strip()} if raw_excl.strip() else set()
        else:
            self.exclude_samples = {str(v).strip() for v in raw_excl if str(v).strip()}

        # Harmonizer setup
        self.harmonizer = DataHarmonizer(dataset_cfg)

        # Preprocessing config and setup
        self.preprocessor = Preprocessor(kwargs.get("preprocessing", {}) or {})

        # Process
        self._load_and_process()

    def _load_and_process(self):

        # Load data
        self.rawinput = self._load_rawdata(self.file_path)

        # Harmonize data
        self.rawinput, self.sample_annotation = self.harmonizer.harmonize(self.rawinput)

        # Exclude samples if any
        self.rawinput, self.sample_annotation = self._apply_exclude_samples(self.rawinput, self.sample_annotation)

        # Apply preprocessing
        self.preprocessed_data = self._apply_preprocessing(self.rawinput)

        # Convert to AnnData format
        self._convert_to_anndata()

    def _apply_exclude_samples(self, df: pl.DataFrame, annotation: pd.DataFrame):
        """Drop sample columns if requested. Unknown names are reported and ignored."""
        if not self.exclude_samples:
            return df, annotation

        present = set(annotation.index)
        to_drop = sorted(self.exclude_samples & present)
        missing = sorted(self.exclude_samples - present)

        if missing:
            log_info(f"Exclude samples: {len(missing)} not found in data → ignored: {missing}")
        if not to_drop:
            log_info("Exclude samples: nothing to drop.")
            return df, annotation

        annotation = annotation.drop(index=to_drop)
        for col in annotation.columns:
            if isinstance(annotation[col].dtype, pd.CategoricalDtype):
                annotation[col] = annotation[col].cat.remove_unused_categories()
        log_info(f"Exclude samples: dropped {len(to_drop)} sample(s): {to_drop}")
        return df.drop(to_drop), annotation

    @log_time("Data Loading")
    def _load_rawdata(self, file_path: Optional[str]) -> pl.DataFrame:
        """Load raw data from a CSV, TSV or TXT (tab separated) file using different libraries."""
        if not file_path or not str(file_path).endswith((".csv", ".tsv", ".txt")):
            raise SchemaMismatchError(f"Only CSV, TSV or TXT files are supported (got {file_path!r}).")

        file_path = str(file_path)
        delimiter = "," if file_path.endswith(".csv") else "\t"

        if self.load_method == "polars":
            df = pl.read_csv(file_path,
                             separator=delimiter,
                             infer_schema_length=10000,
                             null_values=["NA", "NaN", "N/A", ""])
        elif self.load_method == "pyarrow":
            parse_options = pv_csv.ParseOptions(delimiter=delimiter)
            arrow_table = pv_csv.read_csv(file_path, parse_options=parse_options)
            df = pl.from_arrow(arrow_table)
        elif self.load_method == "pandas":
            df = pl.from_pandas(pd.read_csv(file_path, delimiter=delimiter))
        else:
            raise ValueError(f"Unknown load method: {self.load_method}")

        log_info(f"Loaded {df.height} rows × {df.width} columns from {file_path}")
        return df

    @log_time("Data Processing")
    def _apply_preprocessing(self, df: pl.DataFrame):
        return self.preprocessor.fit_transform(df, self.sample_annotation)

    @log_time("Conversion to AnnData")
    def _convert_to_anndata(self):
        """Convert the protein-level data to an AnnData object (samples × proteins)."""
        data = self.preprocessed_data

        protein_meta_df = data.protein_meta.to_pandas().set_index("INDEX")

        X, protein_index = polars_matrix_to_numpy(data.summarized, index_col="INDEX")
        X = X.reshape(len(protein_index), len(data.sample_annotation.index))

        # Ensure the metadata index matches the order of protein_index from X
        protein_meta_df = protein_meta_df.loc[protein_index]

        sample_names = [c for c in data.summarized.columns if c != "INDEX"]
        obs = data.sample_annotation.loc[sample_names]

        self.adata = ad.AnnData(
            X=X.T,
            obs=obs,
            var=protein_meta_df,
        )
        self.adata.layers["summarized"] = X.T.copy()

        self.adata.uns["preprocessing"] = {
            "filtering": data.meta_filtering,
            "normalization": data.meta_normalization,
            "summarization": data.meta_summarization,
            "stages": list(self.preprocessor.intermediate_results.order),
        }
        if self.preprocessor.block_factor:
            self.adata.uns["preprocessing"]["block_factor"] = str(self.preprocessor.block_factor)
        if data.missingness is not None:
            self.adata.uns["missingness"] = data.missingness.loc[protein_index]

        # Peptide-level stages, aligned on the filtered peptide rows
        rows = data.row_annotation.get_column("PEPTIDE_ID").to_list()
        stages = {}
        for name in ("filtered", "log2", "normalized"):
            mat, idx = polars_matrix_to_numpy(getattr(data, name), index_col="PEPTIDE_ID")
            assert list(idx) == [str(r) for r in rows]
            stages[name] = np.asarray(mat, dtype=np.float64).reshape(len(rows), len(sample_names))

        self.adata.uns["peptides"] = {
            "rows": [str(r) for r in rows],
            "protein_index": [str(g) for g in data.row_annotation.get_column("PROTEIN_GROUP").to_list()],
            "n_nonmissing": data.row_annotation.get_column("N_NONMISSING").to_numpy(),
            "cols": sample_names,
            **stages,
        }

        # check index is fine between proteins and matrix index
        assert list(protein_meta_df.index) == list(protein_index)

    def get_anndata(self) -> ad.AnnData:
        """Export the processed dataset as an AnnData object."""
        return self.adata

    def stage(self, name: str) -> pl.DataFrame:
        """Any recorded stage of the assay chain, by name."""
        return self.preprocessor.intermediate_results.get_df(name)

    @property
    def stage_names(self) -> List[str]:
        return list(self.preprocessor.intermediate_results.order)
