from proteodiff.analysis.msqrob_pipeline import run_msqrob_pipeline
from proteodiff.export.de_exporter import DEExporter
from proteodiff.utils.utils import log_info, log_time
from proteodiff.workflow.dataset import Dataset


@log_time("Proteodiff Pipeline")
def run_pipeline(config: dict):
    dataset = Dataset(**config)
    adata = dataset.get_anndata()
    adata, _ = run_msqrob_pipeline(adata, config)

    analysis_config = config.get("analysis", {}) or {}
    export_config = analysis_config.get("exports") or {}

    exporter = DEExporter(adata,
                          output_path=export_config.get("path_table") or "proteodiff_results",
                          use_xlsx=bool(export_config.get("use_xlsx", False)),
                          sig_threshold=analysis_config.get("sign_threshold", 0.05),
                          config=config,
                          )
    if export_config.get("path_table"):
        out = exporter.export()
        log_info(f"Tables written to {out}")

    if export_config.get("path_h5ad"):
        exporter.export_adata(export_config.get("path_h5ad"))

    return adata
