"""
Podroom Podcast Processing

Audio segmentation, transcription collaborators and episode reports.
Import from the submodules directly; podroom.models depends on
podcast.models, so this package stays free of eager imports.
"""
