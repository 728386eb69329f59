"""Export machinery shared by the CLI and host integrations.

Modules here know about images, metadata, filenames and the export state
machine, but never about threads or process wiring; that lives in
`image_export.app`.

Common entrypoints:

- `image_export.framework.export_pipeline`: `ExportPipeline.tick()` state machine
- `image_export.framework.metadata`: generation-metadata parsing for the supported tag formats
- `image_export.framework.config`: `ExportConfig.from_dict` validation
"""
