"""FFmpeg-backed encoding for the frame render pipeline.

Modules:
- runner: ffmpeg discovery and command construction
- process: EncoderProcessHandle, one supervised ffmpeg invocation
- progress: parser for ``-progress pipe:1`` output
- stitcher: factories for the streaming pre-encoder and the final stitch
"""
