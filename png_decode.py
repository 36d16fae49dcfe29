import sys
import zlib
import logging
import argparse
import numpy as np

from lib_png import (PNG, ImageHeader, PNGError, ParameterError, FileNotFound, FormatError,
                     FilterTypeError, NotEnoughMemory, DecompressError, DecompressorAllocError,
                     WriteError)

log = logging.getLogger("png_decode")


#output is produced in pieces of this size
_INFLATE_PIECE = 1<<20


def zlibDecompress(compressed, expectedSize:int, out = None):
    """
    Inflate a zlib stream that must produce exactly expectedSize bytes. With out given
    (any writable byte buffer of expectedSize) the data is inflated straight into it and
    out is returned, otherwise a new bytearray.
    """
    try:
        inflater = zlib.decompressobj()
    except MemoryError as e:
        raise DecompressorAllocError() from e
    try:
        if out is None:
            out = bytearray(expectedSize)
        view = memoryview(out).cast("B")
        position = 0
        pending = compressed
        while not inflater.eof:
            piece = inflater.decompress(pending, _INFLATE_PIECE)
            pending = inflater.unconsumed_tail
            if not piece:
                break
            end = position + len(piece)
            if end > expectedSize:
                raise DecompressError("stream holds more than %d bytes" % expectedSize)
            view[position:end] = piece
            position = end
        view.release()
    except zlib.error as e:
        raise DecompressError(str(e)) from e
    except MemoryError as e:
        raise NotEnoughMemory() from e
    if not inflater.eof:
        raise DecompressError("truncated stream")
    if position != expectedSize:
        raise DecompressError("inflated %d bytes, expected %d" % (position, expectedSize))
    return out


class PNG_decoder(PNG):
    filter_type = (PNG.None_I, PNG.Sub_I, PNG.Up_I, PNG.Average_I, PNG.Paeth_I)
    filter_dict = dict(enumerate(filter_type))

    def __init__(self, finput, decompress = zlibDecompress) -> None:
        super().__init__(finput)
        self.decompress = decompress
        self._checkSignature()
        self.IHDR = self._readHeader()
        #first chunk after IHDR, both passes over the chunk stream start here
        self.offset = finput.tell()
        self.bands = self.IHDR.channels

    def _checkSignature(self) -> None:
        signature = PNG.fread(self.im, PNG._PNG_SIGNATURE_LENGTH)
        if signature != PNG._PNG_SIGNATURE:
            raise FormatError("wrong signature")

    def _readHeader(self) -> ImageHeader:
        """
        Parses IHDR. Only 8-bit, non-interlaced greyscale or truecolor is accepted, so a bit
        depth other than 8 is rejected here instead of failing later on the inflated size.
        """
        finput = self.im
        chunkLength = PNG.freadBE32(finput)
        chunkType = PNG.fread(finput, 4)
        if chunkLength is None or chunkType != b"IHDR":
            raise FormatError("first chunk is not IHDR")
        data = PNG.fread(finput, PNG._PNG_IHDR_LENGTH)
        if data is None:
            raise FormatError("truncated IHDR")
        fields = np.frombuffer(data, dtype = PNG._IHDR_type)[0]
        header = ImageHeader(width = int(fields["width"]),
                             height = int(fields["height"]),
                             colorType = int(fields["colortype"]),
                             bitDepth = int(fields["bitdepth"]),
                             compress = int(fields["compress"]),
                             filter = int(fields["filter"]),
                             interlace = int(fields["interlace"]))
        finput.seek(PNG._CRC_LENGTH, 1) #crc is not checked
        for name in ("width", "height"):
            value = getattr(header, name)
            if not 1 <= value <= PNG._MAX_DIMENSION:
                raise FormatError("%s %d out of range" % (name, value))
        if header.colorType not in PNG.color_type_name:
            raise FormatError("unsupported color type %d" % header.colorType)
        if header.bitDepth != 8:
            raise FormatError("unsupported bit depth %d" % header.bitDepth)
        if header.compress or header.filter or header.interlace:
            raise FormatError("unsupported compression, filter or interlace method")
        log.debug("IHDR %dx%d %s", header.width, header.height,
                  PNG.color_type_name[header.colorType])
        return header

    def _skip(self, chunkLength:int) -> None:
        self.im.seek(chunkLength + PNG._CRC_LENGTH, 1)

    def checkChunkSequence(self) -> int:
        """
        First pass over the chunks after IHDR. Enforces the chunk ordering this decoder
        accepts and returns the summed length of all IDAT payloads.

        Accepted: ancillary chunks anywhere but right after PLTE, at most one PLTE (colour
        images only) which must be directly followed by IDAT, a single contiguous run of IDAT
        chunks, and IEND as the very last bytes of the file. Any other critical chunk fails.
        """
        finput = self.im
        finput.seek(self.offset, 0)
        paletteJustSeen = False
        idatSeen = False
        idatClosed = False
        idatTotalBytes = 0
        cleanlyTerminated = False
        while True:
            chunkLength = PNG.freadBE32(finput)
            if chunkLength is None:
                break
            chunkType = PNG.fread(finput, 4)
            if chunkType is None:
                break
            kind = PNG.classifyChunk(chunkType)
            log.debug("chunk %r (%s), %d bytes", chunkType, PNG.kindName(kind), chunkLength)
            if kind != PNG.CHUNK["IDAT"]:
                if idatSeen:
                    idatClosed = True
                if paletteJustSeen:
                    log.debug("PLTE is not followed by IDAT")
                    break
                if kind == PNG.CHUNK["ancillary"]:
                    self._skip(chunkLength)
                    continue
                if kind == PNG.CHUNK["IEND"]:
                    self._skip(chunkLength)
                    if PNG.fread(finput, 1) is None:
                        cleanlyTerminated = True
                    else:
                        log.debug("trailing bytes after IEND")
                    break
                if kind == PNG.CHUNK["PLTE"]:
                    paletteJustSeen = True
                    if (self.IHDR.colorType == PNG.COLOR_GREYSCALE
                            or chunkLength < PNG._PLTE_MIN_LENGTH
                            or chunkLength > PNG._PLTE_MAX_LENGTH
                            or chunkLength % 3 != 0):
                        log.debug("illegal PLTE")
                        break
                    self._skip(chunkLength)
                    continue
                log.debug("unexpected critical chunk %r", chunkType)
                break
            #IDAT
            paletteJustSeen = False
            if idatClosed:
                log.debug("IDAT chunks are not consecutive")
                break
            idatSeen = True
            idatTotalBytes += chunkLength
            self._skip(chunkLength)
        if not (cleanlyTerminated and idatSeen):
            raise FormatError("illegal chunk sequence")
        return idatTotalBytes

    def collectPayload(self, idatTotalBytes:int) -> bytearray:
        """
        Second pass, copies the IDAT payloads in file order into one buffer. Ordering was
        already validated by checkChunkSequence().
        """
        finput = self.im
        finput.seek(self.offset, 0)
        try:
            buffer = bytearray(idatTotalBytes)
        except (MemoryError, OverflowError) as e:
            raise NotEnoughMemory() from e
        view = memoryview(buffer)
        position = 0
        while True:
            chunkLength = PNG.freadBE32(finput)
            chunkType = PNG.fread(finput, 4)
            if chunkLength is None or chunkType is None:
                raise FormatError("chunk stream ends before IEND")
            if chunkType == b"IDAT":
                end = position + chunkLength
                if end > idatTotalBytes or finput.readinto(view[position:end]) != chunkLength:
                    raise FormatError("truncated IDAT")
                finput.seek(PNG._CRC_LENGTH, 1)
                position = end
            elif chunkType == b"IEND":
                self._skip(chunkLength)
                break
            else:
                self._skip(chunkLength)
        view.release()
        return buffer

    def unzipData(self) -> np.ndarray:
        """
        Returns the inflated image as a (height, stride) scanline array.
        """
        stream = self.collectPayload(self.checkChunkSequence())
        IHDR = self.IHDR
        try:
            scanlines = np.empty((IHDR.height, IHDR.stride), dtype = np.uint8)
        except (MemoryError, ValueError, OverflowError) as e:
            raise NotEnoughMemory() from e
        log.debug("inflating %d bytes into %d", len(stream), IHDR.rawSize)
        flat = scanlines.reshape(-1)
        data = self.decompress(stream, IHDR.rawSize, flat)
        del stream
        if data is not flat:
            try:
                flat[:] = np.frombuffer(data, dtype = np.uint8)
            except ValueError as e:
                raise DecompressError("decompressor returned %d bytes" % len(data)) from e
        return scanlines

    def defilter(self, scanlines:np.ndarray) -> np.ndarray:
        """
        Reverses the per-row filters in place, top to bottom. Column 0 of every row is the
        filter type and stays untouched.
        """
        bpp = self.bands
        context = np.zeros(scanlines.shape[1] - 1, dtype = np.uint8)
        for idx in range(scanlines.shape[0]):
            filter_func = PNG_decoder.filter_dict.get(int(scanlines[idx, 0]))
            if filter_func is None:
                raise FilterTypeError("row %d has filter type %d" % (idx, scanlines[idx, 0]))
            row = scanlines[idx, 1:]
            filter_func(row, context, bpp)
            context = row
        return scanlines

    def decode(self) -> np.ndarray:
        return self.defilter(self.unzipData())

    def toArray(self) -> np.ndarray:
        """
        Decoded pixels as (height, width, bands).
        """
        IHDR = self.IHDR
        return self.decode()[:, 1:].reshape(IHDR.height, IHDR.width, self.bands)


def writePNM(outfile, header:ImageHeader, scanlines:np.ndarray) -> bool:
    """
    Writes a binary PGM/PPM. A short write is logged and stops the output but is not an
    error, False is returned instead.
    """
    rowLength = header.stride - 1
    try:
        outfile.write(b"%s\n%d %d\n%d\n" % (header.pnmMagic, header.width, header.height, 255))
        for idx in range(header.height):
            if outfile.write(scanlines[idx, 1:].tobytes()) != rowLength:
                raise WriteError("short write on row %d" % idx)
        outfile.flush()
    except (OSError, WriteError) as e:
        log.warning(WriteError.message)
        log.debug("%s", e)
        return False
    return True


def openOutput(path):
    return open(path, "wb")


def convert(inputPath, outputPath) -> int:
    """
    Converts one PNG file to PNM and returns the exit code of the tool.
    """
    try:
        try:
            finput = open(inputPath, "rb")
        except OSError as e:
            raise FileNotFound(str(e)) from e
        with finput:
            decoder = PNG_decoder(finput)
            scanlines = decoder.decode()
        try:
            outfile = openOutput(outputPath)
        except OSError as e:
            raise FileNotFound(str(e)) from e
        written = False
        try:
            with outfile:
                written = writePNM(outfile, decoder.IHDR, scanlines)
        except OSError as e:
            #close flushes again, report once
            if written:
                log.warning(WriteError.message)
            log.debug("closing output: %s", e)
    except PNGError as e:
        log.error(e.message)
        log.debug("%s", e)
        return e.exitCode
    return 0


class ArgumentParser(argparse.ArgumentParser):
    """
    Usage errors are a wrong parameter count, not argparse's own exit status.
    """
    def error(self, message):
        raise ParameterError(message)


def parse_args(argv):
    """
    Anything that is not -v/--verbose is a path, including names starting with '-'.
    """
    parser = ArgumentParser(prog = "png2pnm",
                            description = "Convert an 8-bit greyscale or truecolor PNG to PGM/PPM.")
    parser.add_argument("paths", nargs = "*", metavar = "path", help = "input.png output.pnm")
    parser.add_argument("-v", "--verbose", action = "store_true", help = "log every chunk")
    args, extras = parser.parse_known_args(argv)
    kept = set(args.paths) | set(extras)
    args.paths = [arg for arg in argv if arg in kept]
    return args


def main(argv = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    try:
        args = parse_args(argv)
    except ParameterError as e:
        args = None
        log.debug("%s", e)
    logging.basicConfig(level = logging.DEBUG if args is not None and args.verbose else logging.WARNING,
                        format = "[%(levelname)s] %(message)s")
    if args is None or len(args.paths) != 2:
        log.error(ParameterError.message)
        return ParameterError.exitCode
    return convert(*args.paths)


if __name__ == "__main__":
    sys.exit(main())
