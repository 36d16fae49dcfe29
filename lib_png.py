import numpy as np
from struct import unpack
from typing import NamedTuple


class PNGError(Exception):
    """
    Base of every failure the converter reports. Each kind carries the exit code of the
    command-line tool and the fixed diagnostic line printed for it.
    """
    exitCode = 1
    message = "Unknown error"

    def __init__(self, detail:str = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail


class ParameterError(PNGError):
    exitCode = 87
    message = "The parameter (count of parameters) is incorrect"


class FileNotFound(PNGError):
    exitCode = 2
    message = "The system cannot find the file specified."


class FormatError(PNGError):
    exitCode = 13
    message = "The data is invalid"


class FilterTypeError(FormatError):
    message = "Undefined filter type"


class NotEnoughMemory(PNGError):
    exitCode = 8
    message = "Not enough memory resources are available to process this command"


class DecompressError(PNGError):
    exitCode = 13
    message = "Can't uncompress buffer"


class DecompressorAllocError(DecompressError):
    exitCode = 14
    message = "Not enough storage is available to complete this operation"


class WriteError(PNGError):
    #never fatal, the conversion still reports success
    exitCode = 0
    message = "Couldn't write to the file"


class ImageHeader(NamedTuple):
    width: int
    height: int
    colorType: int
    bitDepth: int = 8
    compress: int = 0
    filter: int = 0
    interlace: int = 0

    @property
    def channels(self) -> int:
        return 3 if self.colorType == PNG.COLOR_TRUECOLOR else 1

    @property
    def stride(self) -> int:
        #one filter-type byte in front of every scanline
        return self.width*self.channels + 1

    @property
    def rawSize(self) -> int:
        return self.height*self.stride

    @property
    def pnmMagic(self) -> bytes:
        return b"P6" if self.colorType == PNG.COLOR_TRUECOLOR else b"P5"


def paeth(a:int, b:int, c:int) -> int:
    """
    Paeth predictor over left (a), top (b) and top-left (c). Ties go to a, then b.
    """
    p = a + b - c
    pa = abs(p - a)
    pb = abs(p - b)
    pc = abs(p - c)
    if pa <= pb and pa <= pc:
        return a
    if pb <= pc:
        return b
    return c


class PNG():
    #signature
    _PNG_SIGNATURE_LENGTH = 8
    _PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

    #IHDR chunk, header. the declared chunk length is never trusted, 13 bytes are always read
    _PNG_IHDR_LENGTH = 13
    _PNG_IHDR_ITEMS = ('width', 'height', 'bitdepth', 'colortype', 'compress', 'filter', 'interlace')
    _IHDR_type = np.dtype({'names'  : _PNG_IHDR_ITEMS,
                           'formats': ['>u4', '>u4', 'u1', 'u1', 'u1',  'u1', 'u1']})
    _MAX_DIMENSION = 2147483647
    _CRC_LENGTH = 4

    COLOR_GREYSCALE = 0
    COLOR_TRUECOLOR = 2
    color_type_name = {COLOR_GREYSCALE:"Greyscale", COLOR_TRUECOLOR:"Truecolor"}

    #PLTE holds 1..256 RGB triples
    _PLTE_MIN_LENGTH = 3
    _PLTE_MAX_LENGTH = 3*256

    #chunk kinds, as returned by classifyChunk()
    _CHUNK_KINDS = ("IHDR", "PLTE", "IDAT", "IEND", "critical", "ancillary")
    CHUNK = dict(zip(_CHUNK_KINDS, range(len(_CHUNK_KINDS))))
    _CHUNK_LIST = [b"IHDR", b"PLTE", b"IDAT", b"IEND"]

    #tools function, None when the stream ends early
    fread = lambda finput, n: PNG._exact(finput.read(n), n)
    freadBE32 = lambda finput: PNG._be32OrNone(PNG.fread(finput, 4))
    readBE32  = lambda x: unpack(">I", x)[0]

    def __init__(self, finput) -> None:
        self.im = finput
        self.IHDR = None

    @staticmethod
    def _exact(data:bytes, n:int):
        return data if len(data) == n else None

    @staticmethod
    def _be32OrNone(data):
        return None if data is None else PNG.readBE32(data)

    @classmethod
    def classifyChunk(cls, chunkType:bytes) -> int:
        """
        Only 'I' and 'P' chunks can be one of the four known names; every other upper case
        first letter is a critical chunk this decoder does not understand, anything else is
        ancillary.
        """
        first = chunkType[0]
        if first in b"IP":
            if chunkType in cls._CHUNK_LIST:
                return cls.CHUNK[chunkType.decode("ascii")]
            return cls.CHUNK["critical"]
        if ord("A") <= first <= ord("Z"):
            return cls.CHUNK["critical"]
        return cls.CHUNK["ancillary"]

    @classmethod
    def kindName(cls, kind:int) -> str:
        return cls._CHUNK_KINDS[kind]

    """
    #filters, each one reconstructs a scanline in place. row holds the filtered bytes of
    #the current line (filter byte excluded), context is the already reconstructed previous
    #line, all zeros for the first line. bpp is the distance to the left neighbour.
    #all should have uint8 dtype.
    """
    @staticmethod
    def None_I(row:np.ndarray, context:np.ndarray, bpp:int) -> int:
        return 0

    @staticmethod
    def Sub_I(row:np.ndarray, context:np.ndarray, bpp:int) -> int:
        pixels = row.reshape(-1, bpp)
        pixels[:] = np.cumsum(pixels, axis = 0, dtype = np.uint8) #must specify its uint8!
        return 0

    @staticmethod
    def Up_I(row:np.ndarray, context:np.ndarray, bpp:int) -> int:
        row += context
        return 0

    @staticmethod
    def Average_I(row:np.ndarray, context:np.ndarray, bpp:int) -> int:
        cur = row.reshape(-1, bpp)
        up = context.reshape(-1, bpp).astype(np.int16)
        a = np.zeros(bpp, dtype = np.int16) #left, zero before the first pixel
        for i in range(cur.shape[0]):
            cur[i] = (cur[i] + ((a + up[i])>>1)) & 0xFF
            a = cur[i].astype(np.int16)
        return 0

    @staticmethod
    def Paeth_I(row:np.ndarray, context:np.ndarray, bpp:int) -> int:
        cur = row.reshape(-1, bpp)
        up = context.reshape(-1, bpp).astype(np.int16)
        a = np.zeros(bpp, dtype = np.int16) #left
        c = np.zeros(bpp, dtype = np.int16) #upper left
        for i in range(cur.shape[0]):
            b = up[i]
            pr = a + b - c
            pa = np.abs(pr - a)
            pb = np.abs(pr - b)
            pc = np.abs(pr - c)
            pred = np.where((pa <= pb) & (pa <= pc), a, np.where(pb <= pc, b, c))
            cur[i] = (cur[i] + pred) & 0xFF
            a = cur[i].astype(np.int16)
            c = b
        return 0
